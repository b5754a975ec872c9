from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Dict, Optional

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..models.analysis_job import AnalysisJob, JobStatus
from .analyst import ComputationError, DeepAnalyzer, get_analyzer
from .jobs import JobManager
from .phase_store import PhaseDataStore
from .tracing import trace_job_step

logger = logging.getLogger(__name__)

settings = get_settings()


def _error_message(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


class JobWorker:
    """
    Runs one analysis job to a terminal state.

    1. queued -> processing (skip everything if that edge is refused)
    2. rehydrate session context from the phase store
    3. run the analyzer under ``compute_timeout`` (< worker ceiling)
    4. processing -> completed | error
    """

    def __init__(
        self,
        manager: Optional[JobManager] = None,
        analyzer: Optional[DeepAnalyzer] = None,
        phase_store: Optional[PhaseDataStore] = None,
        *,
        compute_timeout: Optional[float] = None,
    ) -> None:
        self.manager = manager or JobManager()
        self._analyzer = analyzer
        self.phase_store = phase_store or PhaseDataStore()
        self.compute_timeout = compute_timeout or settings.JOB_COMPUTE_TIMEOUT_SECONDS

    @property
    def analyzer(self) -> DeepAnalyzer:
        if self._analyzer is None:
            self._analyzer = get_analyzer()
        return self._analyzer

    def _load_context(self, job: AnalysisJob) -> Dict[str, Any]:
        request = job.request or {}
        session_id = request.get("session_id")
        if not session_id:
            return dict(request.get("context") or {})
        upto = int(request.get("upto_phase") or 10_000)
        return self.phase_store.aggregate(session_id, job.subject, upto)

    def _compute(self, job: AnalysisJob, context: Dict[str, Any]) -> Dict[str, Any]:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"job-{job.id[:8]}")
        future = executor.submit(
            self.analyzer.analyze,
            job.subject,
            context,
            job.request or {},
            self.compute_timeout,
        )
        try:
            result = future.result(timeout=self.compute_timeout)
        except FuturesTimeout:
            future.cancel()
            raise ComputationError(
                f"computation timed out after {self.compute_timeout:g}s"
            ) from None
        finally:
            # Never block the worker on a hung computation
            executor.shutdown(wait=False)

        if not isinstance(result, dict):
            raise ComputationError(
                f"computation returned {type(result).__name__}, expected an object"
            )
        return result

    def execute(self, job_id: str) -> Optional[JobStatus]:
        job = self.manager.get(job_id)
        if job is None:
            logger.warning("Job not found; nothing to execute", extra={"job_id": job_id})
            return None

        if not self.manager.mark_processing(job_id):
            # Already terminal (dispatch failure, reaper) or picked up elsewhere
            current = self.manager.get(job_id)
            logger.info(
                "Job not in queued state; skipping execution",
                extra={"job_id": job_id, "status": current.status.value if current else None},
            )
            return current.status if current else None

        trace_job_step(job_id, phase="WORKER", step="status:processing", label="Worker started")
        logger.info(
            "Starting analysis job",
            extra={"job_id": job_id, "subject": job.subject, "step": "start"},
        )

        try:
            context = self._load_context(job)
            trace_job_step(
                job_id,
                phase="WORKER",
                step="compute:start",
                label="Running deep analysis",
                meta={"context_keys": sorted(context)},
            )
            result = self._compute(job, context)
            if not self.manager.complete(job_id, result):
                # Reaped while computing; the result is discarded
                logger.warning(
                    "Job left processing before completion was recorded",
                    extra={"job_id": job_id, "step": "completed"},
                )
                return JobStatus.ERROR
        except Exception as e:
            message = _error_message(e)
            logger.exception(
                "Analysis job failed",
                extra={"job_id": job_id, "subject": job.subject, "step": "failed"},
            )
            try:
                self.manager.fail(job_id, message)
            except Exception:
                # The reaper closes the job once it exceeds its lifetime
                logger.exception(
                    "Could not record terminal error for job",
                    extra={"job_id": job_id, "step": "failed"},
                )
            trace_job_step(
                job_id,
                phase="WORKER",
                step="status:error",
                label="Analysis failed",
                detail=message[:500],
            )
            return JobStatus.ERROR

        trace_job_step(job_id, phase="WORKER", step="status:completed", label="Analysis completed")
        logger.info(
            "Analysis job completed",
            extra={"job_id": job_id, "subject": job.subject, "step": "completed"},
        )
        return JobStatus.COMPLETED


@celery_app.task(
    name="app.services.worker.run_analysis_job",
    bind=True,
    queue="analysis",
    soft_time_limit=settings.JOB_WORKER_MAX_SECONDS,
    time_limit=settings.JOB_WORKER_MAX_SECONDS + 15,
)
def run_analysis_job(self, job_id: str) -> Optional[str]:
    status = JobWorker().execute(job_id)
    return status.value if status else None
