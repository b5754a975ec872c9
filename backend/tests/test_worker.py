"""
Tests for worker.py - executing a job to a terminal state

The worker must always leave the job completed or error, respect the
compute timeout, and never resurrect a job that is already terminal.
"""
import pytest

from app.models.analysis_job import JobStatus
from app.services.jobs import JobManager
from app.services.phase_store import PhaseDataStore
from app.services.worker import JobWorker

from tests.fixtures.pipeline_fixtures import (
    FailingAnalyzer,
    ListAnalyzer,
    RecordingDispatcher,
    RejectingDispatcher,
    SlowAnalyzer,
    StaticAnalyzer,
)


@pytest.fixture
def manager(clock):
    return JobManager(dispatcher=RecordingDispatcher(), clock=clock)


@pytest.fixture
def phase_store(clock):
    return PhaseDataStore(clock=clock)


class TestExecute:

    def test_completes_with_session_context(self, manager, phase_store):
        phase_store.store("s1", "BTC", 1, {"market_data": {"price": 1}})
        phase_store.store("s1", "BTC", 2, {"news": {"count": 2}})
        phase_store.store("s1", "BTC", 4, {"ignored": True})
        analyzer = StaticAnalyzer({"summary": "steady", "confidence": 70})
        job_id = manager.create("BTC", {"session_id": "s1", "upto_phase": 4})

        status = JobWorker(manager, analyzer, phase_store).execute(job_id)

        assert status == JobStatus.COMPLETED
        assert analyzer.calls[0]["context"] == {"market_data": {"price": 1}, "news": {"count": 2}}
        view = manager.poll(job_id)
        assert view["status"] == "completed"
        assert view["result"] == {"summary": "steady", "confidence": 70}

    def test_inline_context_without_session(self, manager, phase_store):
        analyzer = StaticAnalyzer()
        job_id = manager.create("BTC", {"context": {"price": 5}})
        JobWorker(manager, analyzer, phase_store).execute(job_id)
        assert analyzer.calls[0]["context"] == {"price": 5}

    def test_analyzer_failure_marks_error(self, manager, phase_store):
        job_id = manager.create("BTC")
        status = JobWorker(manager, FailingAnalyzer("model overloaded"), phase_store).execute(job_id)

        assert status == JobStatus.ERROR
        view = manager.poll(job_id)
        assert view["status"] == "error"
        assert view["error"] == "model overloaded"

    def test_compute_timeout_marks_error(self, manager, phase_store):
        job_id = manager.create("BTC")
        worker = JobWorker(manager, SlowAnalyzer(delay=1.0), phase_store, compute_timeout=0.05)

        assert worker.execute(job_id) == JobStatus.ERROR
        assert manager.poll(job_id)["error"] == "computation timed out after 0.05s"

    def test_non_object_result_marks_error(self, manager, phase_store):
        job_id = manager.create("BTC")
        assert JobWorker(manager, ListAnalyzer(), phase_store).execute(job_id) == JobStatus.ERROR
        assert "expected an object" in manager.poll(job_id)["error"]

    def test_already_failed_job_is_not_executed(self, clock, phase_store):
        manager = JobManager(dispatcher=RejectingDispatcher(), clock=clock)
        analyzer = StaticAnalyzer()
        job_id = manager.create("BTC")

        status = JobWorker(manager, analyzer, phase_store).execute(job_id)

        assert status == JobStatus.ERROR
        assert analyzer.calls == []
        assert manager.poll(job_id)["error"].startswith("dispatch failed")

    def test_second_invocation_does_not_rerun(self, manager, phase_store):
        analyzer = StaticAnalyzer()
        job_id = manager.create("BTC")
        worker = JobWorker(manager, analyzer, phase_store)

        assert worker.execute(job_id) == JobStatus.COMPLETED
        assert worker.execute(job_id) == JobStatus.COMPLETED
        assert len(analyzer.calls) == 1

    def test_reaped_mid_computation_stays_error(self, manager, phase_store):
        class ReapedWhileRunning:
            def analyze(self, subject, context, request, timeout):
                manager.fail(job_id, "stale/timeout: job exceeded max lifetime of 1800s")
                return {"summary": "late", "confidence": 50}

        job_id = manager.create("BTC")
        status = JobWorker(manager, ReapedWhileRunning(), phase_store).execute(job_id)

        assert status == JobStatus.ERROR
        view = manager.poll(job_id)
        assert view["status"] == "error"
        assert view["error"].startswith("stale/timeout")

    def test_missing_job(self, manager, phase_store):
        assert JobWorker(manager, StaticAnalyzer(), phase_store).execute("nope") is None

    def test_worker_writes_trace(self, manager, phase_store):
        job_id = manager.create("BTC")
        JobWorker(manager, StaticAnalyzer(), phase_store).execute(job_id)
        steps = [e["step"] for e in manager.trace(job_id)]
        assert steps[-3:] == ["status:processing", "compute:start", "status:completed"]
