"""
Tests for jobs.py - job lifecycle, dispatch and the reaper

Every job must reach completed or error in bounded time, terminal states
are final, and polling never changes a job.
"""
import httpx
import pytest

from app.models.analysis_job import JobStatus
from app.services.jobs import DispatchError, HttpDispatcher, JobManager, MAX_ERROR_LEN

from tests.fixtures.pipeline_fixtures import RecordingDispatcher, RejectingDispatcher


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def manager(dispatcher, clock):
    return JobManager(dispatcher=dispatcher, clock=clock)


# ---------------------------------------------------------------------------
# Creation and dispatch
# ---------------------------------------------------------------------------

class TestCreate:

    def test_create_queues_and_dispatches(self, manager, dispatcher):
        job_id = manager.create("btc", {"session_id": "s1", "upto_phase": 4})

        view = manager.poll(job_id)
        assert view["status"] == "queued"
        assert view["subject"] == "BTC"
        assert dispatcher.dispatched == [
            {"job_id": job_id, "subject": "BTC", "request": {"session_id": "s1", "upto_phase": 4}}
        ]

    def test_rejected_dispatch_marks_job_as_error(self, clock):
        manager = JobManager(dispatcher=RejectingDispatcher(), clock=clock)
        job_id = manager.create("BTC")

        view = manager.poll(job_id)
        assert view["status"] == "error"
        assert view["error"].startswith("dispatch failed")
        assert "503" in view["error"]
        assert view["completed_at"] is not None

    def test_dispatch_exception_of_any_kind_marks_error(self, clock):
        class Exploding:
            name = "exploding"

            def dispatch(self, job_id, subject, request):
                raise ConnectionError("broker down")

        manager = JobManager(dispatcher=Exploding(), clock=clock)
        job_id = manager.create("BTC")
        assert manager.poll(job_id)["status"] == "error"

    def test_create_records_trace(self, manager):
        job_id = manager.create("BTC")
        phases = [e["phase"] for e in manager.trace(job_id)]
        assert phases == ["QUEUED", "DISPATCH"]

    def test_empty_subject_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.create("  ")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TestTransitions:

    def test_happy_path(self, manager):
        job_id = manager.create("BTC")
        assert manager.mark_processing(job_id)
        assert manager.complete(job_id, {"summary": "ok", "confidence": 80})

        view = manager.poll(job_id)
        assert view["status"] == "completed"
        assert view["result"] == {"summary": "ok", "confidence": 80}
        assert "error" not in view

    def test_cannot_complete_from_queued(self, manager):
        job_id = manager.create("BTC")
        assert manager.complete(job_id, {"x": 1}) is False
        assert manager.poll(job_id)["status"] == "queued"

    def test_terminal_states_are_final(self, manager):
        job_id = manager.create("BTC")
        manager.mark_processing(job_id)
        manager.complete(job_id, {"x": 1})

        assert manager.fail(job_id, "late failure") is False
        assert manager.mark_processing(job_id) is False
        assert manager.poll(job_id)["status"] == "completed"

    def test_error_cannot_be_completed(self, manager):
        job_id = manager.create("BTC")
        manager.fail(job_id, "boom")
        assert manager.mark_processing(job_id) is False
        assert manager.complete(job_id, {"x": 1}) is False
        assert manager.poll(job_id)["status"] == "error"

    def test_error_message_is_truncated(self, manager):
        job_id = manager.create("BTC")
        manager.fail(job_id, "x" * 2000)
        assert len(manager.poll(job_id)["error"]) == MAX_ERROR_LEN

    def test_queued_is_not_a_target(self, manager):
        job_id = manager.create("BTC")
        with pytest.raises(ValueError):
            manager.transition(job_id, JobStatus.QUEUED)

    def test_unknown_job(self, manager):
        assert manager.mark_processing("missing") is False
        assert manager.poll("missing") is None


class TestPoll:

    def test_poll_is_idempotent(self, manager, clock):
        job_id = manager.create("BTC")
        manager.mark_processing(job_id)
        first = manager.poll(job_id)
        clock.advance(30)
        second = manager.poll(job_id)
        assert first == second

    def test_result_hidden_until_completed(self, manager):
        job_id = manager.create("BTC")
        manager.mark_processing(job_id)
        view = manager.poll(job_id)
        assert "result" not in view
        assert "error" not in view


# ---------------------------------------------------------------------------
# Reaper
# ---------------------------------------------------------------------------

class TestReaper:

    def test_stale_jobs_are_forced_to_error(self, manager, clock):
        queued = manager.create("BTC")
        processing = manager.create("ETH")
        manager.mark_processing(processing)

        clock.advance(1801)
        reaped = manager.reap_stale(1800)

        assert sorted(reaped) == sorted([queued, processing])
        for job_id in (queued, processing):
            view = manager.poll(job_id)
            assert view["status"] == "error"
            assert "stale/timeout" in view["error"]

    def test_fresh_and_terminal_jobs_are_left_alone(self, manager, clock):
        done = manager.create("BTC")
        manager.mark_processing(done)
        manager.complete(done, {"ok": True})
        clock.advance(1801)
        fresh = manager.create("ETH")

        assert manager.reap_stale(1800) == []
        assert manager.poll(done)["status"] == "completed"
        assert manager.poll(fresh)["status"] == "queued"

    def test_worker_cannot_complete_a_reaped_job(self, manager, clock):
        job_id = manager.create("BTC")
        manager.mark_processing(job_id)
        clock.advance(1801)
        manager.reap_stale(1800)

        assert manager.complete(job_id, {"late": True}) is False
        assert manager.poll(job_id)["status"] == "error"

    def test_reaper_traces_its_decision(self, manager, clock):
        job_id = manager.create("BTC")
        clock.advance(1801)
        manager.reap_stale(1800)
        assert manager.trace(job_id)[-1]["phase"] == "REAPER"


# ---------------------------------------------------------------------------
# HTTP dispatcher
# ---------------------------------------------------------------------------

class TestHttpDispatcher:

    def test_accepted_with_2xx(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(202, json={"accepted": True})

        dispatcher = HttpDispatcher(
            "http://worker.local/api/jobs/{job_id}/run",
            secret="s3cret",
            transport=httpx.MockTransport(handler),
        )
        dispatcher.dispatch("job-1", "BTC", {})

        assert seen["url"] == "http://worker.local/api/jobs/job-1/run"
        assert seen["auth"] == "Bearer s3cret"

    def test_non_2xx_raises(self):
        dispatcher = HttpDispatcher(
            "http://worker.local/run",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(DispatchError, match="HTTP 503"):
            dispatcher.dispatch("job-1", "BTC", {})

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = HttpDispatcher("http://worker.local/run", transport=httpx.MockTransport(handler))
        with pytest.raises(DispatchError, match="unreachable"):
            dispatcher.dispatch("job-1", "BTC", {})

    def test_job_is_error_when_http_trigger_rejects(self, clock):
        dispatcher = HttpDispatcher(
            "http://worker.local/run",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        manager = JobManager(dispatcher=dispatcher, clock=clock)
        job_id = manager.create("BTC")

        view = manager.poll(job_id)
        assert view["status"] == "error"
        assert view["error"] == "dispatch failed: worker trigger returned HTTP 500"
