from __future__ import annotations

import json
import logging
import math
import threading
import zlib
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, NamedTuple

import redis
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import SessionLocal, upsert
from ..models.analysis_cache import CacheEntry
from .subjects import normalize_analysis_type, normalize_subject

logger = logging.getLogger(__name__)

settings = get_settings()

Clock = Callable[[], datetime]

_LOCK_STRIPES = 64


class CacheLookup(NamedTuple):
    payload: Any
    quality: int | None
    found: bool


MISS = CacheLookup(None, None, False)


def _get_sync_redis() -> redis.Redis:
    """
    Create a fresh sync Redis client per call so Celery workers
    don't hold onto closed event loops.
    """
    return redis.from_url(
        str(settings.REDIS_URL),
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )


def _clamp_quality(quality: float | int | None) -> int | None:
    if quality is None:
        return None
    return max(0, min(100, int(round(quality))))


class MemoryTier:
    """
    Bounded LRU of serialized payloads for the current process only.

    Entries are stored as JSON text so callers never share mutable state
    with the cache; TTL is capped so another process's invalidation is
    observed within ``max_ttl`` seconds.
    """

    def __init__(self, max_entries: int, max_ttl: int, clock: Clock) -> None:
        self._entries: OrderedDict[tuple[str, str], tuple[str, int | None, datetime]] = OrderedDict()
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._max_ttl = max_ttl
        self._clock = clock

    def get(self, key: tuple[str, str]) -> CacheLookup:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            serialized, quality, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return MISS
            self._entries.move_to_end(key)
        return CacheLookup(json.loads(serialized), quality, True)

    def set(self, key: tuple[str, str], serialized: str, quality: int | None, expires_at: datetime) -> None:
        capped = min(expires_at, self._clock() + timedelta(seconds=self._max_ttl))
        with self._lock:
            self._entries[key] = (serialized, quality, capped)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_subject(self, subject: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == subject]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CacheManager:
    """
    Tiered cache for ``(subject, analysis_type) -> (payload, quality, expiry)``.

    Tiers, fastest first:
      1. in-process ``MemoryTier`` (short TTL, per process)
      2. Redis (best-effort; any RedisError falls through to SQL)
      3. SQL ``analysis_cache`` table (authoritative, atomic upserts)

    Entries are global per subject: every caller asking for the same
    subject/type shares one entry.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        use_redis: bool | None = None,
        redis_factory: Callable[[], redis.Redis] = _get_sync_redis,
        memory: MemoryTier | None = None,
        clock: Clock = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._use_redis = settings.CACHE_REDIS_ENABLED if use_redis is None else use_redis
        self._redis_factory = redis_factory
        self._clock = clock
        self.memory = memory or MemoryTier(
            settings.CACHE_MEMORY_MAX_ENTRIES,
            settings.CACHE_MEMORY_TTL_SECONDS,
            clock,
        )
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        # Stable across runs, unlike hash() on str
        return self._locks[zlib.crc32("|".join(key).encode("utf-8")) % _LOCK_STRIPES]

    @staticmethod
    def _redis_key(subject: str, analysis_type: str) -> str:
        return f"{settings.CACHE_KEY_PREFIX}:{subject}:{analysis_type}"

    # ------------------------------------------------------------------
    # Redis tier
    # ------------------------------------------------------------------

    def _redis_get(self, subject: str, analysis_type: str) -> tuple[str, int | None, datetime] | None:
        if not self._use_redis:
            return None
        client = self._redis_factory()
        try:
            raw = client.get(self._redis_key(subject, analysis_type))
            if raw is None:
                return None
            envelope = json.loads(raw)
            expires_at = datetime.fromisoformat(envelope["expires_at"])
            if expires_at <= self._clock():
                return None
            return envelope["payload"], envelope.get("quality"), expires_at
        except (redis.RedisError, ValueError, KeyError) as e:
            logger.warning(
                "Redis cache read failed; falling back to database: %s",
                e,
                extra={"subject": subject, "analysis_type": analysis_type},
            )
            return None
        finally:
            try:
                client.close()
            except Exception:
                pass

    def _redis_fill(
        self,
        subject: str,
        analysis_type: str,
        serialized: str,
        quality: int | None,
        expires_at: datetime,
    ) -> None:
        if not self._use_redis:
            return
        ttl = math.ceil((expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            return
        envelope = json.dumps(
            {"payload": serialized, "quality": quality, "expires_at": expires_at.isoformat()}
        )
        client = self._redis_factory()
        try:
            # nx: a fill never replaces what another reader already filled
            client.set(self._redis_key(subject, analysis_type), envelope, ex=ttl, nx=True)
        except redis.RedisError as e:
            logger.warning(
                "Redis cache write failed: %s",
                e,
                extra={"subject": subject, "analysis_type": analysis_type},
            )
        finally:
            try:
                client.close()
            except Exception:
                pass

    def _redis_delete(self, subject: str, analysis_type: str | None) -> None:
        if not self._use_redis:
            return
        client = self._redis_factory()
        try:
            if analysis_type:
                client.delete(self._redis_key(subject, analysis_type))
            else:
                keys = list(client.scan_iter(match=f"{settings.CACHE_KEY_PREFIX}:{subject}:*"))
                if keys:
                    client.delete(*keys)
        except redis.RedisError as e:
            logger.warning(
                "Redis cache invalidation failed: %s",
                e,
                extra={"subject": subject, "analysis_type": analysis_type},
            )
        finally:
            try:
                client.close()
            except Exception:
                pass

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, subject: str, analysis_type: str) -> CacheLookup:
        """
        Look up a live entry. Missing and expired entries are a plain miss
        (``found=False``), never an error.
        """
        subject = normalize_subject(subject)
        analysis_type = normalize_analysis_type(analysis_type)
        key = (subject, analysis_type)

        hit = self.memory.get(key)
        if hit.found:
            return hit

        with self._key_lock(key):
            cached = self._redis_get(subject, analysis_type)
            if cached is not None:
                serialized, quality, expires_at = cached
                self.memory.set(key, serialized, quality, expires_at)
                return CacheLookup(json.loads(serialized), quality, True)

            db = self._session_factory()
            try:
                row = (
                    db.query(CacheEntry)
                    .filter(
                        CacheEntry.subject == subject,
                        CacheEntry.analysis_type == analysis_type,
                        CacheEntry.expires_at > self._clock(),
                    )
                    .first()
                )
                if row is None:
                    logger.debug(
                        "Cache miss",
                        extra={"subject": subject, "analysis_type": analysis_type},
                    )
                    return MISS
                serialized = json.dumps(row.payload)
                quality = row.quality_score
                expires_at = row.expires_at
            finally:
                db.close()

            self.memory.set(key, serialized, quality, expires_at)
            self._redis_fill(subject, analysis_type, serialized, quality, expires_at)

        logger.debug(
            "Cache hit",
            extra={"subject": subject, "analysis_type": analysis_type},
        )
        return CacheLookup(json.loads(serialized), quality, True)

    def set(
        self,
        subject: str,
        analysis_type: str,
        payload: Any,
        ttl_seconds: int | None = None,
        quality: float | int | None = None,
    ) -> None:
        """
        Upsert an entry and reset its expiry.

        The database row is the only tier written in order across processes:
        the Redis key is dropped and refilled from the row on the next read,
        so concurrent writers cannot leave Redis and the database disagreeing.
        """
        subject = normalize_subject(subject)
        analysis_type = normalize_analysis_type(analysis_type)
        ttl = settings.CACHE_DEFAULT_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        serialized = json.dumps(payload)
        quality_score = _clamp_quality(quality)
        key = (subject, analysis_type)

        with self._key_lock(key):
            now = self._clock()
            expires_at = now + timedelta(seconds=ttl)
            db = self._session_factory()
            try:
                upsert(
                    db,
                    CacheEntry,
                    {
                        "subject": subject,
                        "analysis_type": analysis_type,
                        "payload": payload,
                        "quality_score": quality_score,
                        "created_at": now,
                        "expires_at": expires_at,
                    },
                    index_elements=("subject", "analysis_type"),
                    update_fields=("payload", "quality_score", "created_at", "expires_at"),
                )
                db.commit()
            except Exception:
                db.rollback()
                logger.exception(
                    "Failed to write cache entry",
                    extra={"subject": subject, "analysis_type": analysis_type},
                )
                raise
            finally:
                db.close()

            self.memory.set(key, serialized, quality_score, expires_at)
            self._redis_delete(subject, analysis_type)

        logger.info(
            "Analysis cached (ttl=%ss, quality=%s)",
            ttl,
            quality_score,
            extra={"subject": subject, "analysis_type": analysis_type},
        )

    def invalidate(self, subject: str, analysis_type: str | None = None) -> int:
        """
        Drop one entry, or every entry for ``subject`` when no type is given.

        Returns the number of durable rows deleted.
        """
        subject = normalize_subject(subject)
        analysis_type = normalize_analysis_type(analysis_type) if analysis_type else None

        db = self._session_factory()
        try:
            q = db.query(CacheEntry).filter(CacheEntry.subject == subject)
            if analysis_type:
                q = q.filter(CacheEntry.analysis_type == analysis_type)
            deleted = q.delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if analysis_type:
            self.memory.delete((subject, analysis_type))
        else:
            self.memory.delete_subject(subject)
        self._redis_delete(subject, analysis_type)

        logger.info(
            "Invalidated %s cache entries",
            deleted,
            extra={"subject": subject, "analysis_type": analysis_type or "*"},
        )
        return deleted

    def stats(self, subject: str | None = None) -> dict[str, Any]:
        """Aggregate figures over live durable entries, optionally for one subject."""
        db = self._session_factory()
        try:
            filters = [CacheEntry.expires_at > self._clock()]
            if subject:
                filters.append(CacheEntry.subject == normalize_subject(subject))
            total, oldest, newest, avg_quality, subjects = (
                db.query(
                    func.count(CacheEntry.id),
                    func.min(CacheEntry.created_at),
                    func.max(CacheEntry.created_at),
                    func.avg(CacheEntry.quality_score),
                    func.count(func.distinct(CacheEntry.subject)),
                )
                .filter(*filters)
                .one()
            )
            types = sorted(
                t for (t,) in db.query(CacheEntry.analysis_type).filter(*filters).distinct()
            )
        finally:
            db.close()

        return {
            "total_entries": int(total or 0),
            "total_subjects": int(subjects or 0),
            "analysis_types": types,
            "oldest_entry": oldest,
            "newest_entry": newest,
            "average_quality": float(avg_quality) if avg_quality is not None else None,
        }

    def cleanup_expired(self) -> int:
        db = self._session_factory()
        try:
            deleted = (
                db.query(CacheEntry)
                .filter(CacheEntry.expires_at <= self._clock())
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


_cache_manager: CacheManager | None = None


def get_cache_manager() -> CacheManager:
    """Process-wide CacheManager so the in-memory tier is actually shared."""
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager()
    return _cache_manager
