from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "analysis_pipeline",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={"app.services.worker.run_analysis_job": {"queue": "analysis"}},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    imports=("app.services.worker", "app.services.retention"),
    beat_schedule={
        # Force stale queued/processing jobs into a terminal state
        "reap-stale-jobs": {
            "task": "app.services.retention.reap_stale_jobs",
            "schedule": timedelta(seconds=settings.JOB_REAPER_INTERVAL_SECONDS),
        },
        # Hourly garbage collection of expired cache/phase rows and old jobs
        "cleanup-expired-analysis-data": {
            "task": "app.services.retention.cleanup_expired",
            "schedule": crontab(minute=15),
        },
    },
)
