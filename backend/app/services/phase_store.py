from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import SessionLocal, upsert
from ..models.phase_data import PhaseRecord
from .subjects import normalize_subject

logger = logging.getLogger(__name__)

settings = get_settings()


def _normalize_session(session_id: str | None) -> str:
    value = (session_id or "").strip()
    if not value:
        raise ValueError("session_id must not be empty")
    if len(value) > 255:
        raise ValueError("session_id must be at most 255 characters")
    return value


class PhaseDataStore:
    """
    Durable ``(session, subject, phase) -> payload`` store.

    Only the session token travels between phases; whichever process serves
    phase N rebuilds its context with ``aggregate(session, subject, N)``.
    Every write slides the record's expiry forward by ``ttl_seconds``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl_seconds or settings.PHASE_DATA_TTL_SECONDS
        self._clock = clock

    def store(self, session_id: str, subject: str, phase: int, payload: Dict[str, Any]) -> None:
        session_id = _normalize_session(session_id)
        subject = normalize_subject(subject)
        if not isinstance(payload, dict):
            raise ValueError("phase payload must be a JSON object")
        if phase < 1:
            raise ValueError("phase numbers start at 1")

        now = self._clock()
        db = self._session_factory()
        try:
            upsert(
                db,
                PhaseRecord,
                {
                    "session_id": session_id,
                    "subject": subject,
                    "phase": phase,
                    "payload": payload,
                    "created_at": now,
                    "expires_at": now + timedelta(seconds=self._ttl),
                },
                index_elements=("session_id", "subject", "phase"),
                update_fields=("payload", "expires_at"),
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(
                "Failed to store phase data",
                extra={"session_id": session_id, "subject": subject, "phase": phase},
            )
            raise
        finally:
            db.close()

        logger.info(
            "Stored phase data (%d keys)",
            len(payload),
            extra={"session_id": session_id, "subject": subject, "phase": phase},
        )

    def _live_records(self, db: Session, session_id: str, subject: str):
        return (
            db.query(PhaseRecord)
            .filter(
                PhaseRecord.session_id == session_id,
                PhaseRecord.subject == subject,
                PhaseRecord.expires_at > self._clock(),
            )
        )

    def aggregate(self, session_id: str, subject: str, upto_phase: int) -> Dict[str, Any]:
        """
        Shallow-merge the payloads of phases ``< upto_phase`` in phase order.
        Later phases win on key conflicts; missing phases are simply skipped.
        """
        session_id = _normalize_session(session_id)
        subject = normalize_subject(subject)

        db = self._session_factory()
        try:
            rows = (
                self._live_records(db, session_id, subject)
                .filter(PhaseRecord.phase < upto_phase)
                .order_by(PhaseRecord.phase.asc())
                .all()
            )
            merged: Dict[str, Any] = {}
            for row in rows:
                merged.update(row.payload or {})
        finally:
            db.close()

        logger.debug(
            "Aggregated %d phases for context",
            len(rows),
            extra={"session_id": session_id, "subject": subject, "phase": upto_phase},
        )
        return merged

    def load(self, session_id: str, subject: str, phase: int) -> Optional[Dict[str, Any]]:
        session_id = _normalize_session(session_id)
        subject = normalize_subject(subject)
        db = self._session_factory()
        try:
            row = self._live_records(db, session_id, subject).filter(PhaseRecord.phase == phase).first()
            return dict(row.payload) if row else None
        finally:
            db.close()

    def phases(self, session_id: str, subject: str) -> List[int]:
        session_id = _normalize_session(session_id)
        subject = normalize_subject(subject)
        db = self._session_factory()
        try:
            rows = (
                self._live_records(db, session_id, subject)
                .with_entities(PhaseRecord.phase)
                .order_by(PhaseRecord.phase.asc())
                .all()
            )
            return [phase for (phase,) in rows]
        finally:
            db.close()

    def cleanup_expired(self) -> int:
        db = self._session_factory()
        try:
            deleted = (
                db.query(PhaseRecord)
                .filter(PhaseRecord.expires_at <= self._clock())
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
