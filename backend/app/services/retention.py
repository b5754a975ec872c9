from __future__ import annotations

from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models.analysis_job import AnalysisJob, JobStatus
from ..models.job_trace_event import JobTraceEvent
from .caching import get_cache_manager
from .jobs import JobManager
from .phase_store import PhaseDataStore

logger = logging.getLogger(__name__)
settings = get_settings()


def purge_old_jobs(db: Session, now: datetime | None = None) -> int:
    """Delete terminal jobs (and their trace) older than JOB_RETENTION_DAYS."""
    cutoff = (now or datetime.utcnow()) - timedelta(days=settings.JOB_RETENTION_DAYS)
    job_ids = [
        job_id
        for (job_id,) in db.query(AnalysisJob.id)
        .filter(
            AnalysisJob.status.in_((JobStatus.COMPLETED, JobStatus.ERROR)),
            AnalysisJob.created_at < cutoff,
        )
        .all()
    ]
    if not job_ids:
        return 0

    db.query(JobTraceEvent).filter(JobTraceEvent.job_id.in_(job_ids)).delete(
        synchronize_session=False
    )
    deleted = (
        db.query(AnalysisJob)
        .filter(AnalysisJob.id.in_(job_ids))
        .delete(synchronize_session=False)
    )
    return deleted


@celery_app.task(name="app.services.retention.cleanup_expired")
def cleanup_expired() -> dict:
    """
    Periodic garbage collection of expired durable records.

    - analysis_cache rows past expires_at
    - phase_data rows past expires_at
    - terminal jobs older than JOB_RETENTION_DAYS
    """
    deleted_cache = get_cache_manager().cleanup_expired()
    deleted_phases = PhaseDataStore().cleanup_expired()

    db: Session = SessionLocal()
    try:
        deleted_jobs = purge_old_jobs(db)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "Error during cleanup_expired",
            extra={"step": "retention"},
        )
        raise
    finally:
        db.close()

    counts = {
        "cache_entries": deleted_cache,
        "phase_records": deleted_phases,
        "jobs": deleted_jobs,
    }
    logger.info(
        "Deleted expired analysis data: %s",
        counts,
        extra={"step": "retention"},
    )
    return counts


@celery_app.task(name="app.services.retention.reap_stale_jobs")
def reap_stale_jobs() -> int:
    """
    Periodic sweep forcing jobs stuck in queued/processing past
    JOB_MAX_LIFETIME_SECONDS into ``error`` so pollers always terminate.
    """
    reaped = JobManager().reap_stale()
    return len(reaped)
