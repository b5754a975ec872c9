"""
Job lifecycle for long-running deep-analysis computations.

State machine (see ``ALLOWED_SOURCES``)::

    queued -> processing -> completed
       |           |
       +-----------+------> error

Every transition is a conditional UPDATE guarded by the allowed source
states, so a job can never leave ``completed``/``error`` no matter how
workers, dispatch failures and the reaper interleave.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol
from uuid import uuid4

import httpx
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models.analysis_job import ALLOWED_SOURCES, AnalysisJob, JobStatus
from .subjects import normalize_subject
from .tracing import load_job_trace, trace_job_step

logger = logging.getLogger(__name__)

settings = get_settings()

WORKER_TASK_NAME = "app.services.worker.run_analysis_job"
OPEN_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)
MAX_ERROR_LEN = 500


class DispatchError(RuntimeError):
    """The worker trigger was rejected or could not be delivered."""


class Dispatcher(Protocol):
    name: str

    def dispatch(self, job_id: str, subject: str, request: Dict[str, Any]) -> None:
        """Return once the worker runtime has accepted the job; raise DispatchError otherwise."""


class CeleryDispatcher:
    name = "celery"

    def dispatch(self, job_id: str, subject: str, request: Dict[str, Any]) -> None:
        try:
            celery_app.send_task(WORKER_TASK_NAME, args=[job_id], queue="analysis")
        except Exception as e:
            # kombu raises OperationalError & friends when the broker is unreachable
            raise DispatchError(f"broker did not accept task: {e}") from e


class HttpDispatcher:
    """
    Triggers a worker invocation over HTTP and requires a 2xx acceptance.

    The worker endpoint answers as soon as it has scheduled the work; the
    computation itself runs in that separate invocation.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        *,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._transport = transport

    def dispatch(self, job_id: str, subject: str, request: Dict[str, Any]) -> None:
        headers = {}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(
                    self.url.format(job_id=job_id),
                    json={"job_id": job_id, "subject": subject, "request": request},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise DispatchError(f"worker trigger unreachable ({e.__class__.__name__}: {e})") from e

        if not resp.is_success:
            raise DispatchError(f"worker trigger returned HTTP {resp.status_code}")


def get_dispatcher() -> Dispatcher:
    if settings.JOB_DISPATCH_MODE == "http":
        if not settings.WORKER_TRIGGER_URL:
            raise RuntimeError("WORKER_TRIGGER_URL must be set when JOB_DISPATCH_MODE=http")
        return HttpDispatcher(
            settings.WORKER_TRIGGER_URL,
            secret=settings.WORKER_SECRET,
            timeout=settings.JOB_DISPATCH_TIMEOUT_SECONDS,
        )
    return CeleryDispatcher()


def _truncate(message: str) -> str:
    return (message or "unknown error")[:MAX_ERROR_LEN]


class JobManager:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock

    @property
    def dispatcher(self) -> Dispatcher:
        if self._dispatcher is None:
            self._dispatcher = get_dispatcher()
        return self._dispatcher

    # ------------------------------------------------------------------
    # Creation & dispatch
    # ------------------------------------------------------------------

    def create(self, subject: str, request: Optional[Dict[str, Any]] = None) -> str:
        """
        Persist a queued job and synchronously try to dispatch its worker.

        A rejected or failed dispatch is written straight to ``error`` so the
        job is never left queued with no worker notified.
        """
        subject = normalize_subject(subject)
        request = dict(request or {})
        job_id = str(uuid4())
        now = self._clock()

        db = self._session_factory()
        try:
            db.add(
                AnalysisJob(
                    id=job_id,
                    subject=subject,
                    request=request,
                    status=JobStatus.QUEUED,
                    created_at=now,
                    updated_at=now,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "Analysis job queued",
            extra={"job_id": job_id, "subject": subject, "session_id": request.get("session_id")},
        )
        trace_job_step(job_id, phase="QUEUED", step="status:queued", label="Job queued")

        try:
            self.dispatcher.dispatch(job_id, subject, request)
        except Exception as e:
            message = f"dispatch failed: {e}"
            logger.error(
                "Worker dispatch failed; marking job as error",
                extra={"job_id": job_id, "subject": subject, "step": "dispatch"},
            )
            self.fail(job_id, message)
            trace_job_step(
                job_id,
                phase="DISPATCH",
                step="dispatch:failed",
                label="Worker dispatch failed",
                detail=_truncate(message),
            )
            return job_id

        trace_job_step(
            job_id,
            phase="DISPATCH",
            step="dispatch:accepted",
            label="Worker accepted job",
            meta={"dispatcher": self.dispatcher.name},
        )
        return job_id

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @retry(
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Move ``job_id`` to ``target`` if its current status allows it.

        Returns False (and changes nothing) when the job is missing or the
        edge is not permitted, e.g. the job is already terminal.
        """
        sources = ALLOWED_SOURCES.get(target)
        if not sources:
            raise ValueError(f"{target} is not a valid transition target")

        now = self._clock()
        values: Dict[str, Any] = {"status": target, "updated_at": now}
        if target.is_terminal:
            values["completed_at"] = now
        if result is not None:
            values["result"] = result
        if error_message is not None:
            values["error_message"] = _truncate(error_message)

        db = self._session_factory()
        try:
            updated = (
                db.query(AnalysisJob)
                .filter(AnalysisJob.id == job_id, AnalysisJob.status.in_(sources))
                .update(values, synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        moved = bool(updated)
        if moved:
            logger.info(
                "Job moved to %s",
                target.value,
                extra={"job_id": job_id, "status": target.value},
            )
        else:
            logger.warning(
                "Rejected transition to %s",
                target.value,
                extra={"job_id": job_id, "status": target.value},
            )
        return moved

    def mark_processing(self, job_id: str) -> bool:
        return self.transition(job_id, JobStatus.PROCESSING)

    def complete(self, job_id: str, result: Dict[str, Any]) -> bool:
        return self.transition(job_id, JobStatus.COMPLETED, result=result)

    def fail(self, job_id: str, message: str) -> bool:
        return self.transition(job_id, JobStatus.ERROR, error_message=message)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[AnalysisJob]:
        db = self._session_factory()
        try:
            job = db.query(AnalysisJob).filter(AnalysisJob.id == job_id).first()
            if job is not None:
                db.expunge(job)
            return job
        finally:
            db.close()

    def poll(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Read-only status view for consumers. Never mutates the job, so
        repeated polls are idempotent.
        """
        job = self.get(job_id)
        if job is None:
            return None

        view: Dict[str, Any] = {
            "job_id": job.id,
            "subject": job.subject,
            "status": job.status.value,
            "created_at": job.created_at,
            "updated_at": job.updated_at,
            "completed_at": job.completed_at,
        }
        if job.status == JobStatus.COMPLETED:
            view["result"] = job.result
        if job.status == JobStatus.ERROR:
            view["error"] = job.error_message
        return view

    def trace(self, job_id: str) -> List[Dict[str, Any]]:
        return load_job_trace(job_id)

    # ------------------------------------------------------------------
    # Reaper
    # ------------------------------------------------------------------

    def reap_stale(self, max_lifetime_seconds: Optional[int] = None) -> List[str]:
        """
        Force every job still queued/processing past its maximum lifetime
        into ``error``. Returns the ids that were actually reaped.
        """
        lifetime = max_lifetime_seconds or settings.JOB_MAX_LIFETIME_SECONDS
        cutoff = self._clock() - timedelta(seconds=lifetime)

        db = self._session_factory()
        try:
            candidates = [
                job_id
                for (job_id,) in db.query(AnalysisJob.id)
                .filter(AnalysisJob.status.in_(OPEN_STATUSES), AnalysisJob.created_at < cutoff)
                .all()
            ]
        finally:
            db.close()

        reaped: List[str] = []
        message = f"stale/timeout: job exceeded max lifetime of {lifetime}s"
        for job_id in candidates:
            # A worker may finish between the scan and this write; the
            # conditional transition leaves such jobs untouched.
            if self.fail(job_id, message):
                reaped.append(job_id)
                trace_job_step(
                    job_id,
                    phase="REAPER",
                    step="status:error",
                    label="Job reaped as stale",
                    detail=message,
                )
        if reaped:
            logger.warning(
                "Reaped %d stale jobs",
                len(reaped),
                extra={"step": "reaper"},
            )
        return reaped


def get_job_manager() -> JobManager:
    return JobManager()
