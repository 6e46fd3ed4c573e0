"""Tests for the admin HTTP API."""

import httpx
import pytest
import pytest_asyncio

from jobqueue.errors import StoreUnavailableError
from jobqueue.main import create_app
from jobqueue.queue import QueueManager
from jobqueue.stores import MemoryStore

pytestmark = pytest.mark.asyncio


class DownStore(MemoryStore):
    """Store that can no longer be reached."""

    async def ping(self):
        return False

    async def incr(self, key):
        raise StoreUnavailableError("connection refused")

    async def get_hash(self, key):
        raise StoreUnavailableError("connection refused")


@pytest_asyncio.fixture
async def client(manager):
    transport = httpx.ASGITransport(app=create_app(manager))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def down_client(settings, clock):
    manager = QueueManager(DownStore(clock=clock), settings, clock=clock)
    transport = httpx.ASGITransport(app=create_app(manager))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _dead_letter(manager, clock):
    job = await manager.enqueue("q1", {}, max_attempts=1)
    clock.advance(10_000)
    await manager.claim("q1", 1)
    await manager.fail(await manager.begin("q1", job.id), "fatal")
    return job


class TestEnqueue:

    async def test_enqueue_returns_created_job(self, client, manager):
        response = await client.post(
            "/queues/q1/jobs",
            json={"payload": {"url": "https://example.com"}, "priority": "high", "max_attempts": 5},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["queue"] == "q1"
        assert body["status"] == "pending"
        assert body["priority"] == 5
        assert body["max_attempts"] == 5
        assert body["payload"] == {"url": "https://example.com"}
        assert (await manager.get_job(body["id"])) is not None

    async def test_unknown_priority_is_bad_request(self, client):
        response = await client.post("/queues/q1/jobs", json={"priority": "urgent"})

        assert response.status_code == 400
        assert "urgent" in response.json()["detail"]

    async def test_negative_delay_is_rejected(self, client, manager):
        response = await client.post("/queues/q1/jobs", json={"delay_ms": -5})

        assert response.status_code == 422
        assert (await manager.get_queue_stats("q1")).pending == 0


class TestQueues:

    async def test_stats(self, client, manager):
        await manager.enqueue("q1", {})

        response = await client.get("/queues/q1/stats")

        assert response.status_code == 200
        assert response.json() == {"pending": 1, "processing": 0, "completed": 0, "failed": 0}

    async def test_list_jobs_with_status(self, client, manager, clock):
        failed = await _dead_letter(manager, clock)
        await manager.enqueue("q1", {})

        response = await client.get("/queues/q1/jobs", params={"status": "failed"})

        assert response.status_code == 200
        assert [job["id"] for job in response.json()] == [failed.id]

    async def test_list_jobs_rejects_bad_query(self, client):
        assert (await client.get("/queues/q1/jobs", params={"status": "archived"})).status_code == 422
        assert (await client.get("/queues/q1/jobs", params={"limit": 0})).status_code == 422

    async def test_clear(self, client, manager, clock):
        await _dead_letter(manager, clock)
        await manager.enqueue("q1", {})

        response = await client.delete("/queues/q1", params={"include_dead_letter": "true"})

        assert response.status_code == 200
        assert response.json()["cleared"] is True
        assert (await manager.get_queue_stats("q1")).model_dump() == {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
        }

    async def test_pause_and_resume(self, client, manager):
        assert (await client.post("/queues/q1/pause")).json() == {"queue": "q1", "paused": True}
        assert await manager.is_paused("q1") is True

        assert (await client.post("/queues/q1/resume")).json() == {"queue": "q1", "paused": False}
        assert await manager.is_paused("q1") is False

    async def test_clean(self, client, manager, clock):
        await _dead_letter(manager, clock)

        response = await client.post("/queues/q1/clean", params={"status": "failed", "grace_ms": 0})

        assert response.status_code == 200
        assert response.json() == {"queue": "q1", "status": "failed", "removed": 1}

    async def test_clean_rejects_active_status(self, client):
        response = await client.post("/queues/q1/clean", params={"status": "pending"})

        assert response.status_code == 400


class TestJobs:

    async def test_get_job(self, client, manager):
        job = await manager.enqueue("q1", {"x": 1})

        response = await client.get(f"/jobs/{job.id}")

        assert response.status_code == 200
        assert response.json()["payload"] == {"x": 1}

    async def test_get_unknown_job(self, client):
        assert (await client.get("/jobs/job_0_0000000000")).status_code == 404

    async def test_retry_failed_job(self, client, manager, clock):
        job = await _dead_letter(manager, clock)

        response = await client.post(f"/jobs/{job.id}/retry")

        assert response.status_code == 200
        assert response.json() == {"job_id": job.id, "status": "pending", "result": "retried"}
        assert (await manager.get_queue_stats("q1")).pending == 1

    async def test_retry_pending_job_conflicts(self, client, manager):
        job = await manager.enqueue("q1", {})

        assert (await client.post(f"/jobs/{job.id}/retry")).status_code == 409

    async def test_retry_unknown_job(self, client):
        assert (await client.post("/jobs/job_0_0000000000/retry")).status_code == 404


class TestStoreDown:

    async def test_enqueue_returns_503(self, down_client):
        response = await down_client.post("/queues/q1/jobs", json={"payload": {}})

        assert response.status_code == 503
        assert response.json() == {"detail": "Backing store unavailable"}

    async def test_get_job_returns_503(self, down_client):
        assert (await down_client.get("/jobs/job_1_0000000001")).status_code == 503

    async def test_readiness_reports_error(self, down_client):
        response = await down_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "error"

    async def test_metrics_report_disconnected(self, down_client):
        body = (await down_client.get("/metrics")).json()

        assert body["store_connected"] is False
        assert body["queues"] == {}
        assert body["total_pending"] == 0


class TestHealthAndMetrics:

    async def test_liveness(self, client):
        body = (await client.get("/health/")).json()

        assert body["status"] == "ok"
        assert body["service"] == "jobqueue"

    async def test_readiness_ok(self, client):
        body = (await client.get("/health/ready")).json()

        assert body["status"] == "ok"
        assert set(body["checks"]["queues"]) == {"q1", "q2"}

    async def test_readiness_degraded_when_paused(self, client, manager):
        await manager.pause_queue("q2")

        body = (await client.get("/health/ready")).json()

        assert body["status"] == "degraded"

    async def test_metrics(self, client, manager, clock):
        await _dead_letter(manager, clock)
        await manager.enqueue("q1", {})
        await manager.enqueue("q2", {})

        body = (await client.get("/metrics")).json()

        assert body["store_connected"] is True
        assert body["total_pending"] == 2
        assert body["dead_letter"] == {"count": 1, "alert": False}
        assert body["queues"]["q1"]["failed"] == 1

    async def test_root(self, client):
        assert (await client.get("/")).json()["status"] == "running"
