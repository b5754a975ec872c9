"""
Tests for retention.py - periodic sweeps run by Celery beat
"""
from datetime import datetime, timedelta

from app.core.db import SessionLocal
from app.models.analysis_job import AnalysisJob
from app.services.caching import CacheManager
from app.services.jobs import JobManager
from app.services.phase_store import PhaseDataStore
from app.services.retention import cleanup_expired, purge_old_jobs, reap_stale_jobs

from tests.fixtures.pipeline_fixtures import RecordingDispatcher


def _past(**delta):
    past = datetime.utcnow() - timedelta(**delta)
    return lambda: past


class TestCleanupExpired:

    def test_removes_expired_cache_and_phase_rows(self):
        CacheManager(use_redis=False, clock=_past(days=1)).set("BTC", "news", {"a": 1}, ttl_seconds=60)
        CacheManager(use_redis=False).set("BTC", "sentiment", {"b": 1}, ttl_seconds=600)
        PhaseDataStore(clock=_past(days=1)).store("s1", "BTC", 1, {"a": 1})
        PhaseDataStore().store("s1", "BTC", 2, {"b": 1})

        counts = cleanup_expired()

        assert counts == {"cache_entries": 1, "phase_records": 1, "jobs": 0}
        assert PhaseDataStore().phases("s1", "BTC") == [2]

    def test_purges_old_terminal_jobs_only(self):
        old = JobManager(dispatcher=RecordingDispatcher(), clock=_past(days=40))
        done = old.create("BTC")
        old.fail(done, "boom")
        still_open = old.create("ETH")
        recent = JobManager(dispatcher=RecordingDispatcher())
        fresh = recent.create("SOL")
        recent.fail(fresh, "boom")

        db = SessionLocal()
        try:
            assert purge_old_jobs(db) == 1
            db.commit()
            remaining = sorted(job_id for (job_id,) in db.query(AnalysisJob.id).all())
        finally:
            db.close()

        assert remaining == sorted([still_open, fresh])
        assert old.trace(done) == []


class TestReapTask:

    def test_reap_stale_jobs_task(self):
        stale = JobManager(dispatcher=RecordingDispatcher(), clock=_past(hours=1))
        job_id = stale.create("BTC")

        assert reap_stale_jobs() == 1
        assert stale.poll(job_id)["status"] == "error"
