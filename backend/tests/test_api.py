"""
Tests for the HTTP surface - pipeline, phase data, jobs and cache routes

Service dependencies are overridden with in-process fakes so requests
never reach a provider, the broker or an LLM.
"""
import pytest
from fastapi.testclient import TestClient

from app.api.routes_jobs import get_worker
from app.api.routes_pipeline import get_orchestrator, get_phases
from app.core.config import get_settings
from app.main import app
from app.services.caching import CacheManager, get_cache_manager
from app.services.jobs import HttpDispatcher, JobManager, get_job_manager
from app.services.orchestrator import FetchTask, Phase, PhaseOrchestrator
from app.services.phase_store import PhaseDataStore
from app.services.worker import JobWorker

from tests.fixtures.pipeline_fixtures import (
    MARKET_PAYLOAD,
    NEWS_PAYLOAD,
    FailingFetcher,
    RecordingDispatcher,
    RejectingDispatcher,
    StaticAnalyzer,
    StaticFetcher,
)


@pytest.fixture
def cache():
    return CacheManager(use_redis=False)


@pytest.fixture
def jobs():
    return JobManager(dispatcher=RecordingDispatcher())


@pytest.fixture
def analyzer():
    return StaticAnalyzer({"summary": "constructive", "confidence": 72})


@pytest.fixture
def phases():
    return [
        Phase(
            number=1,
            label="Market data",
            priority="critical",
            tasks=[FetchTask("market_data", StaticFetcher("market", MARKET_PAYLOAD), analysis_type="market-data")],
        ),
        Phase(
            number=2,
            label="Sentiment & news",
            tasks=[
                FetchTask("sentiment", FailingFetcher("sentiment")),
                FetchTask("news", StaticFetcher("news", NEWS_PAYLOAD)),
            ],
        ),
        Phase(number=3, label="Deep analysis", priority="optional", deep_analysis=True),
    ]


@pytest.fixture
def client(cache, jobs, analyzer, phases):
    store = PhaseDataStore()
    app.dependency_overrides[get_cache_manager] = lambda: cache
    app.dependency_overrides[get_job_manager] = lambda: jobs
    app.dependency_overrides[get_phases] = lambda: phases
    app.dependency_overrides[get_orchestrator] = lambda: PhaseOrchestrator(
        cache=cache, phase_store=store, job_manager=jobs
    )
    app.dependency_overrides[get_worker] = lambda: JobWorker(jobs, analyzer, store)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestPipelineRoutes:

    def test_full_run_returns_partial_context_and_job(self, client, jobs):
        resp = client.post("/api/pipeline/btc", json={"session_id": "sess-a"})
        assert resp.status_code == 200
        body = resp.json()

        assert body["subject"] == "BTC"
        assert body["session_id"] == "sess-a"
        assert set(body["context"]) == {"market_data", "news"}
        assert body["partial"] is False
        assert body["data_quality"] == pytest.approx(66.7)
        assert body["job_id"]
        assert jobs.poll(body["job_id"])["status"] == "queued"
        assert body["phases"][1]["errors"] == ["sentiment: upstream unavailable"]

    def test_run_without_body_generates_session(self, client):
        resp = client.post("/api/pipeline/eth")
        assert resp.status_code == 200
        assert resp.json()["session_id"]

    def test_blank_subject_is_rejected(self, client):
        assert client.post("/api/pipeline/%20").status_code == 400

    def test_single_phase_uses_stored_context(self, client):
        client.put("/api/phase-data/sess-b/BTC/1", json={"payload": {"market_data": {"price": 9}}})

        resp = client.post("/api/pipeline/BTC/phases/2", json={"session_id": "sess-b"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["payload"] == {"news": NEWS_PAYLOAD}
        assert body["phase"]["number"] == 2

        agg = client.get("/api/phase-data/sess-b/BTC/aggregate", params={"upto_phase": 3})
        assert agg.json()["payload"] == {"market_data": {"price": 9}, "news": NEWS_PAYLOAD}

    def test_unknown_phase_is_404(self, client):
        resp = client.post("/api/pipeline/BTC/phases/9", json={"session_id": "s"})
        assert resp.status_code == 404

    def test_http_dispatch_back_into_same_app(self, client, cache, jobs, analyzer):
        # Inside the context manager every request shares one event loop, so a
        # handler that blocked the loop could never serve the trigger it calls.
        with TestClient(app) as live:
            dispatcher = HttpDispatcher(
                "http://testserver/api/jobs/{job_id}/run",
                timeout=5.0,
                transport=live._transport,
            )
            app.dependency_overrides[get_orchestrator] = lambda: PhaseOrchestrator(
                cache=cache,
                phase_store=PhaseDataStore(),
                job_manager=JobManager(dispatcher=dispatcher),
            )

            resp = live.post("/api/pipeline/btc", json={"session_id": "sess-http"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["warnings"] == []
        assert body["phases"][2]["job_status"] == "completed"
        assert jobs.poll(body["job_id"])["result"] == {"summary": "constructive", "confidence": 72}
        assert analyzer.calls[0]["subject"] == "BTC"


class TestPhaseDataRoutes:

    def test_put_then_aggregate(self, client):
        assert client.put("/api/phase-data/s1/btc/1", json={"payload": {"a": 1, "b": 1}}).status_code == 204
        assert client.put("/api/phase-data/s1/btc/2", json={"payload": {"b": 2}}).status_code == 204

        resp = client.get("/api/phase-data/s1/BTC/aggregate", params={"upto_phase": 3})
        assert resp.status_code == 200
        assert resp.json() == {"session_id": "s1", "subject": "BTC", "upto_phase": 3, "payload": {"a": 1, "b": 2}}

    def test_invalid_phase_number(self, client):
        assert client.put("/api/phase-data/s1/btc/0", json={"payload": {}}).status_code == 400


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class TestJobRoutes:

    def test_create_and_poll(self, client):
        resp = client.post("/api/jobs", json={"subject": "btc", "request": {"context": {"price": 1}}})
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]
        assert resp.json()["status"] == "queued"

        poll = client.get(f"/api/jobs/{job_id}")
        assert poll.status_code == 200
        assert poll.json()["status"] == "queued"
        assert poll.json()["result"] is None

    def test_rejected_dispatch_is_visible_immediately(self, client):
        app.dependency_overrides[get_job_manager] = lambda: JobManager(dispatcher=RejectingDispatcher())
        resp = client.post("/api/jobs", json={"subject": "btc"})

        assert resp.status_code == 202
        assert resp.json()["status"] == "error"
        assert resp.json()["error"].startswith("dispatch failed")

    def test_unknown_job_is_404(self, client):
        assert client.get("/api/jobs/does-not-exist").status_code == 404
        assert client.get("/api/jobs/does-not-exist/trace").status_code == 404

    def test_worker_trigger_runs_job(self, client, jobs, analyzer):
        job_id = jobs.create("BTC", {"context": {"price": 1}})

        resp = client.post(
            f"/api/jobs/{job_id}/run",
            json={"job_id": job_id, "subject": "BTC", "request": {"context": {"price": 1}}},
        )
        assert resp.status_code == 202

        poll = client.get(f"/api/jobs/{job_id}").json()
        assert poll["status"] == "completed"
        assert poll["result"] == {"summary": "constructive", "confidence": 72}
        assert analyzer.calls[0]["context"] == {"price": 1}

        trace = client.get(f"/api/jobs/{job_id}/trace").json()
        assert trace[-1]["step"] == "status:completed"

    def test_worker_trigger_requires_secret_when_configured(self, client, jobs, monkeypatch):
        monkeypatch.setattr(get_settings(), "WORKER_SECRET", "s3cret")
        job_id = jobs.create("BTC")
        body = {"job_id": job_id, "subject": "BTC"}

        assert client.post(f"/api/jobs/{job_id}/run", json=body).status_code == 401
        ok = client.post(
            f"/api/jobs/{job_id}/run",
            json=body,
            headers={"Authorization": "Bearer s3cret"},
        )
        assert ok.status_code == 202

    def test_worker_trigger_job_id_mismatch(self, client, jobs):
        job_id = jobs.create("BTC")
        resp = client.post(f"/api/jobs/{job_id}/run", json={"job_id": "other", "subject": "BTC"})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class TestCacheRoutes:

    def test_invalidate_and_stats(self, client, cache):
        cache.set("BTC", "news", {"a": 1}, quality=50)
        cache.set("BTC", "sentiment", {"b": 1}, quality=70)

        stats = client.get("/api/cache/stats", params={"subject": "btc"}).json()
        assert stats["total_entries"] == 2
        assert stats["analysis_types"] == ["news", "sentiment"]

        resp = client.post("/api/cache/invalidate", json={"subject": "btc", "analysis_type": "news"})
        assert resp.json() == {"subject": "BTC", "analysis_type": "news", "deleted": 1}
        assert not cache.get("BTC", "news").found

        resp = client.post("/api/cache/invalidate", json={"subject": "BTC"})
        assert resp.json()["deleted"] == 1


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TestApiKey:

    def test_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(get_settings(), "API_AUTH_KEY", "top-secret")

        assert client.get("/api/cache/stats").status_code == 401
        assert client.get("/api/cache/stats", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/api/cache/stats", headers={"X-API-Key": "top-secret"}).status_code == 200
