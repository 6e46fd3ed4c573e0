"""Tests for listing, retrying, clearing, cleaning and health reporting."""

import pytest

from jobqueue.queue import JobStatus, QueueManager, QueueStats
from jobqueue.stores import MemoryStore

pytestmark = pytest.mark.asyncio


async def _dead_letter(manager, clock, **options):
    """Enqueue a job and drive it straight into the dead-letter set."""
    job = await manager.enqueue("q1", {}, max_attempts=1, **options)
    clock.advance(10_000)
    await manager.claim("q1", 1)
    running = await manager.begin("q1", job.id)
    await manager.fail(running, "fatal")
    return job


async def _complete(manager, clock, payload=None):
    job = await manager.enqueue("q1", payload or {})
    clock.advance(10_000)
    await manager.claim("q1", 1)
    running = await manager.begin("q1", job.id)
    await manager.complete(running, "done")
    return job


class TestListJobs:

    async def test_pending_jobs_in_score_order(self, manager):
        low = await manager.enqueue("q1", {}, priority="low")
        high = await manager.enqueue("q1", {}, priority="high")
        normal = await manager.enqueue("q1", {})

        jobs = await manager.list_jobs("q1")

        assert [j.id for j in jobs] == [high.id, normal.id, low.id]

    async def test_limit(self, manager):
        for n in range(5):
            await manager.enqueue("q1", {"n": n})

        jobs = await manager.list_jobs("q1", limit=2)

        assert [j.payload["n"] for j in jobs] == [0, 1]

    async def test_status_filters(self, manager, clock):
        failed = await _dead_letter(manager, clock)
        completed = await _complete(manager, clock)
        pending = await manager.enqueue("q1", {})

        assert [j.id for j in await manager.list_jobs("q1", status="failed")] == [failed.id]
        assert [j.id for j in await manager.list_jobs("q1", status="completed")] == [completed.id]
        assert [j.id for j in await manager.list_jobs("q1", status=JobStatus.PENDING)] == [pending.id]
        assert await manager.list_jobs("q1", status="retrying") == []

    async def test_pending_and_retrying_share_the_queue(self, manager, clock):
        retrying = await manager.enqueue("q1", {})
        clock.advance(10_000)
        await manager.claim("q1", 1)
        await manager.fail(await manager.begin("q1", retrying.id), "again")
        pending = await manager.enqueue("q1", {})

        assert [j.id for j in await manager.list_jobs("q1", status="retrying")] == [retrying.id]
        assert [j.id for j in await manager.list_jobs("q1", status="pending")] == [pending.id]
        assert len(await manager.list_jobs("q1")) == 2

    async def test_processing_jobs(self, manager, clock):
        job = await manager.enqueue("q1", {})
        clock.advance(10_000)
        await manager.claim("q1", 1)
        await manager.begin("q1", job.id)

        jobs = await manager.list_jobs("q1", status="processing")

        assert [(j.id, j.status) for j in jobs] == [(job.id, JobStatus.PROCESSING)]

    async def test_invalid_limit(self, manager):
        with pytest.raises(ValueError):
            await manager.list_jobs("q1", limit=0)

    async def test_unknown_status(self, manager):
        with pytest.raises(ValueError):
            await manager.list_jobs("q1", status="archived")

    async def test_unknown_queue_is_empty(self, manager):
        assert await manager.list_jobs("nope") == []
        assert await manager.get_queue_stats("nope") == QueueStats()


async def test_get_job_unknown(manager):
    assert await manager.get_job("job_0_0000000000") is None


class _AdmitAfterRead(MemoryStore):
    """Runs ``after_read`` once, right after the next index read returns."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.after_read = None

    async def zrange(self, key, start, end):
        members = await super().zrange(key, start, end)
        hook, self.after_read = self.after_read, None
        if hook is not None:
            await hook()
        return members


class TestClearQueue:

    async def test_job_admitted_during_clear_survives(self, settings, clock):
        store = _AdmitAfterRead(clock)
        manager = QueueManager(store, settings, clock=clock)
        early = await manager.enqueue("q1", {"n": 1})
        admitted = []

        async def admit():
            admitted.append(await manager.enqueue("q1", {"n": 2}))

        store.after_read = admit
        await manager.clear_queue("q1")

        late = admitted[0]
        assert await manager.get_job(early.id) is None
        assert (await manager.get_job(late.id)).status == JobStatus.PENDING
        assert await store.zscore(manager.keys.queue("q1"), late.id) is not None
        assert await manager.get_queue_stats("q1") == QueueStats(pending=1)

    async def test_clear_keeps_dead_letter_by_default(self, manager, clock):
        failed = await _dead_letter(manager, clock)
        queued = [await manager.enqueue("q1", {"n": n}) for n in range(3)]

        await manager.clear_queue("q1")

        assert await manager.get_queue_stats("q1") == QueueStats(failed=1)
        assert all([await manager.get_job(j.id) is None for j in queued])
        assert await manager.get_job(failed.id) is not None

    async def test_clear_with_dead_letter(self, manager, clock):
        failed = await _dead_letter(manager, clock)
        await manager.enqueue("q1", {})

        await manager.clear_queue("q1", include_dead_letter=True)

        assert await manager.get_queue_stats("q1") == QueueStats()
        assert await manager.get_job(failed.id) is None

    async def test_clear_leaves_other_queues_alone(self, manager):
        other = await manager.enqueue("q2", {})

        await manager.clear_queue("q1")

        assert await manager.get_job(other.id) is not None
        assert (await manager.get_queue_stats("q2")).pending == 1


class TestCleanQueue:

    async def test_clean_completed_after_grace(self, manager, clock):
        job = await _complete(manager, clock)

        assert await manager.clean_queue("q1", grace_ms=60_000) == 0
        clock.advance(60_000)
        assert await manager.clean_queue("q1", grace_ms=60_000) == 1

        assert await manager.get_job(job.id) is None
        assert await manager.list_jobs("q1", status="completed") == []
        # The lifetime counter is not affected by cleaning.
        assert (await manager.get_queue_stats("q1")).completed == 1

    async def test_clean_failed(self, manager, clock):
        job = await _dead_letter(manager, clock)
        clock.advance(1000)

        assert await manager.clean_queue("q1", grace_ms=0, status="failed") == 1

        assert await manager.get_job(job.id) is None
        assert (await manager.get_queue_stats("q1")).failed == 0

    @pytest.mark.parametrize("status", ["pending", "processing", "retrying"])
    async def test_clean_rejects_active_states(self, manager, status):
        with pytest.raises(ValueError):
            await manager.clean_queue("q1", status=status)

    async def test_clean_rejects_negative_grace(self, manager):
        with pytest.raises(ValueError):
            await manager.clean_queue("q1", grace_ms=-1)


class TestPauseAndHealth:

    async def test_pause_resume(self, manager):
        assert await manager.is_paused("q1") is False
        await manager.pause_queue("q1")
        assert await manager.is_paused("q1") is True
        assert await manager.is_paused("q2") is False
        await manager.resume_queue("q1")
        assert await manager.is_paused("q1") is False

    async def test_paused_queue_still_admits(self, manager):
        await manager.pause_queue("q1")

        await manager.enqueue("q1", {})

        assert (await manager.get_queue_stats("q1")).pending == 1

    async def test_health_reports_configured_queues(self, manager):
        await manager.enqueue("q1", {})

        health = await manager.get_queue_health()

        assert health["store_available"] is True
        assert set(health["queues"]) == {"q1", "q2"}
        assert health["queues"]["q1"] == {
            "pending": 1,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "is_paused": False,
            "is_healthy": True,
        }

    async def test_paused_queue_is_unhealthy(self, manager):
        await manager.pause_queue("q2")

        health = await manager.get_queue_health(["q2"])

        assert health["queues"]["q2"]["is_paused"] is True
        assert health["queues"]["q2"]["is_healthy"] is False

    async def test_failed_threshold_marks_unhealthy(self, manager, settings, clock):
        settings.health_failed_threshold = 2
        await _dead_letter(manager, clock)
        assert (await manager.get_queue_health(["q1"]))["queues"]["q1"]["is_healthy"] is True

        await _dead_letter(manager, clock)
        assert (await manager.get_queue_health(["q1"]))["queues"]["q1"]["is_healthy"] is False

    async def test_unavailable_store(self, manager, store):
        await store.close()

        health = await manager.get_queue_health()

        assert health == {"store_available": False, "queues": {}}
