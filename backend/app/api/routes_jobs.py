import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from ..core.config import get_settings
from ..schemas.pipeline import (
    JobCreatedOut,
    JobCreateRequest,
    JobStatusOut,
    JobTraceEventOut,
    WorkerTriggerIn,
)
from ..services.jobs import JobManager, get_job_manager
from ..services.worker import JobWorker
from .routes_pipeline import verify_api_key

router = APIRouter(tags=["jobs"])

settings = get_settings()
logger = logging.getLogger(__name__)


def get_worker() -> JobWorker:
    return JobWorker()


def verify_worker_secret(authorization: str | None = Header(default=None)) -> None:
    """
    The worker trigger is called by the dispatcher, not by users.

    - In dev, if WORKER_SECRET is not set, the check is skipped.
    - Otherwise, require ``Authorization: Bearer <WORKER_SECRET>``.
    """
    expected = settings.WORKER_SECRET
    if settings.ENV == "dev" and not expected:
        return
    if not expected:
        raise HTTPException(status_code=401, detail="Worker secret not configured")
    if authorization != f"Bearer {expected}":
        raise HTTPException(status_code=401, detail="Invalid worker credentials")


@router.post("/jobs", response_model=JobCreatedOut, status_code=202)
def create_job(
    payload: JobCreateRequest,
    manager: JobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    try:
        job_id = manager.create(payload.subject, payload.request)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    view = manager.poll(job_id)
    return {"job_id": job_id, "status": view["status"], "error": view.get("error")}


@router.get("/jobs/{job_id}", response_model=JobStatusOut)
def poll_job(
    job_id: str,
    manager: JobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    view = manager.poll(job_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return view


@router.get("/jobs/{job_id}/trace", response_model=list[JobTraceEventOut])
def get_job_trace(
    job_id: str,
    manager: JobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    if manager.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return manager.trace(job_id)


@router.post("/jobs/{job_id}/run", status_code=202)
def trigger_worker(
    job_id: str,
    payload: WorkerTriggerIn,
    background_tasks: BackgroundTasks,
    manager: JobManager = Depends(get_job_manager),
    worker: JobWorker = Depends(get_worker),
    _: None = Depends(verify_worker_secret),
):
    """
    HTTP dispatch target. Accepts the job and runs it after the response
    has been sent, so the dispatcher only waits for acceptance.
    """
    if payload.job_id != job_id:
        raise HTTPException(status_code=400, detail="job_id mismatch")
    if manager.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    background_tasks.add_task(worker.execute, job_id)
    logger.info("Worker invocation accepted", extra={"job_id": job_id, "step": "accepted"})
    return {"job_id": job_id, "accepted": True}
