"""
Shared pytest setup.

Settings are read once per process, so the environment is pinned here
before anything under ``app`` is imported: a throwaway SQLite database,
no Redis tier and dev-mode auth.
"""
import os
import tempfile
from datetime import datetime, timedelta

_DB_DIR = tempfile.mkdtemp(prefix="analysis-pipeline-tests-")

os.environ["ENV"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CACHE_REDIS_ENABLED"] = "false"
os.environ["JOB_DISPATCH_MODE"] = "celery"
for _var in ("API_AUTH_KEY", "WORKER_SECRET", "PROVIDER_ENDPOINTS_JSON"):
    os.environ.pop(_var, None)

import pytest  # noqa: E402

from app.core.db import Base, engine  # noqa: E402
from app.models import analysis_cache, analysis_job, job_trace_event, phase_data  # noqa: E402,F401
from app.services import caching  # noqa: E402


class FakeClock:
    """Deterministic naive-UTC clock that tests move forward by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _fresh_database():
    Base.metadata.create_all(bind=engine)
    caching._cache_manager = None
    yield
    caching._cache_manager = None
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
