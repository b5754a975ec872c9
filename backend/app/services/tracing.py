# backend/app/services/tracing.py
from __future__ import annotations

from typing import Any
import logging
from datetime import datetime

from ..core.db import SessionLocal
from ..models.job_trace_event import JobTraceEvent

logger = logging.getLogger(__name__)

def trace_job_step(
    job_id: str,
    *,
    phase: str,
    step: str | None = None,
    label: str,
    detail: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """
    Best-effort, fire-and-forget trace writer.
    Failure must NEVER break the job it describes.
    """
    db = SessionLocal()
    try:
        evt = JobTraceEvent(
            job_id=job_id,
            phase=phase,
            step=step,
            label=label,
            detail=detail,
            meta=meta or {},
            created_at=datetime.utcnow(),
        )
        db.add(evt)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to write job trace event", extra={"job_id": job_id})
    finally:
        db.close()


def load_job_trace(job_id: str) -> list[dict[str, Any]]:
    """Trace events for one job, oldest first, as plain dicts for the API."""
    db = SessionLocal()
    try:
        events = (
            db.query(JobTraceEvent)
            .filter(JobTraceEvent.job_id == job_id)
            .order_by(JobTraceEvent.created_at.asc(), JobTraceEvent.id.asc())
            .all()
        )
        return [
            {
                "created_at": e.created_at,
                "phase": e.phase,
                "step": e.step,
                "label": e.label,
                "detail": e.detail,
                "meta": e.meta or {},
            }
            for e in events
        ]
    finally:
        db.close()
