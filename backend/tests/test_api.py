"""Tests for the health and operator ingestion endpoints."""

import httpx
import pytest_asyncio

from dealintake.config import settings
from dealintake.dependencies import get_db
from dealintake.main import app
from test_scheduler import build_scheduler, scripted_source

API_KEY = "test-ingest-key"


@pytest_asyncio.fixture
async def scheduler(memory_store, inbound_source):
    return build_scheduler(
        [scripted_source("a"), scripted_source("b", priority=2), scripted_source("off", enabled=False), inbound_source],
        memory_store,
    )


@pytest_asyncio.fixture
async def client(scheduler, session_factory, monkeypatch):
    monkeypatch.setattr(settings, "INGEST_API_KEY", API_KEY)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.scheduler = scheduler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.scheduler = None


HEADERS = {"X-Ingest-Key": API_KEY}


class TestHealth:

    async def test_health_with_stopped_scheduler(self, client):
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "ok"
        assert body["scheduler"] == "error: not running"
        assert body["status"] == "degraded"

    async def test_health_without_scheduler(self, client):
        app.state.scheduler = None

        body = (await client.get("/api/v1/health")).json()

        assert body["scheduler"] == "disabled"
        assert body["status"] == "ok"

    async def test_root(self, client):
        body = (await client.get("/")).json()
        assert body["health"] == "/api/v1/health"


class TestIngestAuth:

    async def test_missing_key_rejected(self, client):
        response = await client.get("/api/v1/ingest/sources")
        assert response.status_code == 403

    async def test_wrong_key_rejected(self, client):
        response = await client.get("/api/v1/ingest/sources", headers={"X-Ingest-Key": "nope"})
        assert response.status_code == 403

    async def test_unconfigured_key_closes_endpoints(self, client, monkeypatch):
        monkeypatch.setattr(settings, "INGEST_API_KEY", "")

        response = await client.get("/api/v1/ingest/sources", headers={"X-Ingest-Key": ""})

        assert response.status_code == 403


class TestIngestEndpoints:

    async def test_list_sources(self, client, scheduler):
        await scheduler.run_source("a")

        response = await client.get("/api/v1/ingest/sources", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["scheduler_running"] is False
        by_key = {s["key"]: s for s in body["sources"]}
        assert set(by_key) == {"a", "b", "off", "test_inbound"}
        assert by_key["a"]["state"] == "idle"
        assert by_key["a"]["last_result"]["status"] == "completed"
        assert by_key["a"]["circuit_state"] == "closed"
        assert by_key["off"]["circuit_state"] is None
        assert by_key["off"]["enabled"] is False
        assert by_key["off"]["state"] is None
        assert by_key["test_inbound"]["schedule"] is None
        assert by_key["b"]["rate_limit_max_requests"] == 10

    async def test_trigger_source(self, client, scheduler):
        response = await client.post("/api/v1/ingest/sources/a/trigger", headers=HEADERS)

        assert response.status_code == 202
        body = response.json()
        assert body["source_key"] == "a"
        assert body["trigger_kind"] == "manual"
        assert scheduler.scheduler.get_job(body["job_id"]) is not None

    async def test_trigger_unknown_source(self, client, scheduler):
        response = await client.post("/api/v1/ingest/sources/nope/trigger", headers=HEADERS)

        assert response.status_code == 404
        assert scheduler.scheduler.get_jobs() == []

    async def test_trigger_disabled_source(self, client, scheduler):
        response = await client.post("/api/v1/ingest/sources/off/trigger", headers=HEADERS)

        assert response.status_code == 409
        assert scheduler.scheduler.get_jobs() == []

    async def test_trigger_all(self, client, scheduler):
        response = await client.post("/api/v1/ingest/trigger-all", headers=HEADERS)

        assert response.status_code == 202
        body = response.json()
        assert sorted(job["source_key"] for job in body["jobs"]) == ["a", "b", "test_inbound"]
        assert body["failures"] == {}

    async def test_scheduler_unavailable(self, client):
        app.state.scheduler = None

        response = await client.get("/api/v1/ingest/sources", headers=HEADERS)

        assert response.status_code == 503
