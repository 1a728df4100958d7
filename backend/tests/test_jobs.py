import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from common.errors import HubError, JobPending, TransientUpstream
from common.jobs import FibonacciBackoff, FixedDelay, JobQueue, JobStatus, JobType, NoRetry
from common.models import EventLog
from fakes import FakeClock, FakeRedis, sqlite_session_factory


def _queue(session_factory=None):
    clock = FakeClock()
    queue = JobQueue(FakeRedis(clock), session_factory=session_factory, clock=clock, sleep=AsyncMock())
    return queue, clock


async def _drain(queue, clock, pool="default", rounds=20):
    """Run ready jobs, then let scheduled retries come due, until nothing is left."""
    for _ in range(rounds):
        while await queue.run_once(pool, timeout=0):
            pass
        clock.advance(3600)
        if not await queue.promote_due():
            break


class TestRetryPolicies:
    def test_fibonacci_delays(self):
        policy = FibonacciBackoff(base=1.0, max_delay=3600)
        assert [policy.delay(n) for n in range(1, 8)] == [1, 2, 3, 5, 8, 13, 21]

    def test_fibonacci_respects_base_and_cap(self):
        policy = FibonacciBackoff(base=2.0, max_delay=10)
        assert [policy.delay(n) for n in range(1, 6)] == [2, 4, 6, 10, 10]

    def test_fixed_delay(self):
        assert FixedDelay(7).delay(1) == FixedDelay(7).delay(9) == 7

    def test_no_retry_forces_single_attempt(self):
        job_type = JobType("once", AsyncMock(), max_attempts=10, policy=NoRetry())
        assert job_type.max_attempts == 1

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            JobType("never", AsyncMock(), max_attempts=0)


def test_enqueue_and_run_finishes_with_result():
    async def _run():
        queue, _ = _queue()
        handler = AsyncMock(return_value={"ok": 1})
        queue.register(JobType("echo", handler))
        queue.context = "ctx"

        job_id = await queue.enqueue("echo", "a", 2)
        assert (await queue.get_job(job_id)).status == JobStatus.QUEUED

        assert await queue.run_once("default", timeout=0) is True
        handler.assert_awaited_once_with("ctx", "a", 2)
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FINISHED
        assert job.attempt == 1
        assert job.result == {"ok": 1}

    asyncio.run(_run())


def test_enqueue_rejects_unknown_type_and_unserializable_args():
    async def _run():
        queue, _ = _queue()
        queue.register(JobType("echo", AsyncMock()))

        with pytest.raises(ValueError):
            await queue.enqueue("missing")
        with pytest.raises(ValueError):
            await queue.enqueue("echo", object())

    asyncio.run(_run())


def test_register_rejects_unknown_pool():
    queue, _ = _queue()
    with pytest.raises(ValueError):
        queue.register(JobType("echo", AsyncMock(), pool="nowhere"))


def test_retryable_failure_exhausts_exactly_max_attempts():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(side_effect=TransientUpstream("502"))
        on_failure = AsyncMock()
        queue.register(JobType("flaky", handler, max_attempts=3, on_failure=on_failure))

        job_id = await queue.enqueue("flaky", "chat1")
        await _drain(queue, clock)

        job = await queue.get_job(job_id)
        assert handler.await_count == 3
        assert job.status == JobStatus.FAILED
        assert job.attempt == 3
        assert "502" in job.last_error
        on_failure.assert_awaited_once()
        assert [j.id for j in await queue.failed_jobs()] == [job_id]

    asyncio.run(_run())


def test_retry_waits_for_backoff_delay():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(side_effect=[TransientUpstream("429"), "done"])
        queue.register(JobType("flaky", handler, max_attempts=5, policy=FixedDelay(30)))

        job_id = await queue.enqueue("flaky")
        await queue.run_once("default", timeout=0)

        clock.advance(10)
        assert await queue.promote_due() == 0
        clock.advance(25)
        assert await queue.promote_due() == 1

        await queue.run_once("default", timeout=0)
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FINISHED
        assert job.attempt == 2

    asyncio.run(_run())


def test_non_retryable_failure_fails_immediately():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(side_effect=HubError("400 bad request"))
        queue.register(JobType("strict", handler, max_attempts=10))

        job_id = await queue.enqueue("strict")
        await _drain(queue, clock)

        job = await queue.get_job(job_id)
        assert handler.await_count == 1
        assert job.status == JobStatus.FAILED

    asyncio.run(_run())


def test_failing_on_failure_hook_is_contained():
    async def _run():
        queue, clock = _queue()
        hook = AsyncMock(side_effect=RuntimeError("chat gone"))
        queue.register(JobType("once", AsyncMock(side_effect=HubError("no")), policy=NoRetry(), on_failure=hook))

        job_id = await queue.enqueue("once")
        await _drain(queue, clock)

        hook.assert_awaited_once()
        assert (await queue.get_job(job_id)).status == JobStatus.FAILED

    asyncio.run(_run())


def test_scheduled_job_runs_only_when_due():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(return_value=None)
        queue.register(JobType("later", handler))

        await queue.schedule("later", 60, "x")
        assert await queue.run_once("default", timeout=0) is False

        clock.advance(61)
        assert await queue.promote_due() == 1
        assert await queue.run_once("default", timeout=0) is True
        handler.assert_awaited_once()

    asyncio.run(_run())


def test_cancel_queued_job_prevents_execution():
    async def _run():
        queue, _ = _queue()
        handler = AsyncMock()
        queue.register(JobType("echo", handler))

        job_id = await queue.enqueue("echo")
        assert await queue.cancel(job_id) is True

        assert await queue.run_once("default", timeout=0) is False
        handler.assert_not_awaited()
        assert (await queue.get_job(job_id)).status == JobStatus.CANCELLED

    asyncio.run(_run())


def test_cancel_refuses_finished_job():
    async def _run():
        queue, _ = _queue()
        queue.register(JobType("echo", AsyncMock()))

        job_id = await queue.enqueue("echo")
        await queue.run_once("default", timeout=0)

        assert await queue.cancel(job_id) is False
        assert await queue.cancel("no-such-job") is False

    asyncio.run(_run())


def test_do_sync_returns_result_after_retries():
    async def _run():
        queue, _ = _queue()
        handler = AsyncMock(side_effect=[TransientUpstream("502"), TransientUpstream("502"), {"id": "a1"}])
        queue.register(JobType("comment", handler, max_attempts=10))

        assert await queue.do_sync("comment", "card") == {"id": "a1"}
        assert handler.await_count == 3
        assert [c.args[0] for c in queue._sleep.await_args_list] == [1.0, 2.0]

    asyncio.run(_run())


def test_do_sync_raises_last_error_when_budget_exhausted():
    async def _run():
        queue, _ = _queue()
        on_failure = AsyncMock()
        handler = AsyncMock(side_effect=TransientUpstream("still down"))
        queue.register(JobType("comment", handler, max_attempts=2, on_failure=on_failure))

        with pytest.raises(TransientUpstream, match="still down"):
            await queue.do_sync("comment", "card")
        assert handler.await_count == 2
        on_failure.assert_not_awaited()

    asyncio.run(_run())


def test_lifecycle_events_are_logged():
    async def _run():
        async with sqlite_session_factory() as factory:
            queue, clock = _queue(factory)
            handler = AsyncMock(side_effect=[TransientUpstream("502"), None])
            queue.register(JobType("flaky", handler, max_attempts=3))

            job_id = await queue.enqueue("flaky")
            await _drain(queue, clock)

            async with factory() as db:
                rows = (await db.execute(select(EventLog))).scalars().all()
            assert sorted(row.event_type for row in rows) == ["job_finished", "job_retry_scheduled"]
            assert all(row.entity_id == job_id for row in rows)
            assert all(row.request_id == f"job_{job_id}" for row in rows)

    asyncio.run(_run())


def test_do_sync_deadline_leaves_attempt_running():
    async def _run():
        queue, _ = _queue()
        release = asyncio.Event()

        async def _slow(ctx):
            await release.wait()
            return "posted"

        queue.register(JobType("slow", _slow))

        with pytest.raises(JobPending) as exc:
            await queue.do_sync("slow", timeout=0.01)
        job = await queue.get_job(exc.value.job_id)
        assert job.status == JobStatus.EXECUTING

        release.set()
        await asyncio.gather(*list(queue._detached))

        job = await queue.get_job(exc.value.job_id)
        assert job.status == JobStatus.FINISHED
        assert job.result == "posted"
        assert job.attempt == 1
        assert await queue.failed_jobs() == []

    asyncio.run(_run())


def test_detached_sync_job_reports_its_failure():
    async def _run():
        queue, _ = _queue()
        release = asyncio.Event()
        on_failure = AsyncMock()

        async def _rejected(ctx):
            await release.wait()
            raise HubError("400 bad card")

        queue.register(JobType("slow", _rejected, on_failure=on_failure))

        with pytest.raises(JobPending):
            await queue.do_sync("slow", timeout=0.01)
        on_failure.assert_not_awaited()

        release.set()
        await asyncio.gather(*list(queue._detached), return_exceptions=True)

        on_failure.assert_awaited_once()
        failed = await queue.failed_jobs()
        assert [job.status for job in failed] == [JobStatus.FAILED]

    asyncio.run(_run())


def test_job_abandoned_by_dead_worker_runs_again_after_lease():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(side_effect=[asyncio.CancelledError(), "done"])
        queue.register(JobType("comment", handler, max_attempts=3))
        executing = "jobs:pool:default:executing"

        job_id = await queue.enqueue("comment")
        with pytest.raises(asyncio.CancelledError):
            await queue.run_once("default", timeout=0)

        assert (await queue.get_job(job_id)).status == JobStatus.EXECUTING
        assert await queue._redis.lrange(executing, 0, -1) == [job_id]

        # Still within the lease: the worker may just be slow.
        clock.advance(60)
        assert await queue.requeue_stalled() == 0

        clock.advance(900)
        assert await queue.requeue_stalled() == 1
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert "worker lost" in job.last_error

        assert await queue.run_once("default", timeout=0) is True
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FINISHED
        assert job.attempt == 2
        assert await queue._redis.lrange(executing, 0, -1) == []

    asyncio.run(_run())


def test_abandoned_job_with_spent_budget_fails():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(side_effect=asyncio.CancelledError())
        queue.register(JobType("comment", handler, max_attempts=1))

        job_id = await queue.enqueue("comment")
        with pytest.raises(asyncio.CancelledError):
            await queue.run_once("default", timeout=0)

        clock.advance(1000)
        assert await queue.requeue_stalled() == 0
        failed = await queue.failed_jobs()
        assert [job.id for job in failed] == [job_id]
        assert await queue._redis.lrange("jobs:pool:default:executing", 0, -1) == []
        assert await queue.run_once("default", timeout=0) is False
        assert handler.await_count == 1

    asyncio.run(_run())


def test_claim_never_started_is_requeued_on_next_sweep():
    async def _run():
        queue, _ = _queue()
        handler = AsyncMock(return_value=None)
        queue.register(JobType("echo", handler))
        ready, executing = "jobs:pool:default:ready", "jobs:pool:default:executing"

        job_id = await queue.enqueue("echo")
        # A worker took the id and died before loading the job.
        await queue._redis.blmove(ready, executing, 0)

        assert await queue.requeue_stalled() == 0
        assert await queue.requeue_stalled() == 1
        assert await queue._redis.lrange(ready, 0, -1) == [job_id]

        assert await queue.run_once("default", timeout=0) is True
        assert (await queue.get_job(job_id)).status == JobStatus.FINISHED
        handler.assert_awaited_once()

    asyncio.run(_run())


def test_settled_jobs_leave_no_claims_behind():
    async def _run():
        queue, clock = _queue()
        handler = AsyncMock(side_effect=[TransientUpstream("502"), None])
        queue.register(JobType("flaky", handler, max_attempts=3))

        job_id = await queue.enqueue("flaky")
        await _drain(queue, clock)

        assert (await queue.get_job(job_id)).status == JobStatus.FINISHED
        assert await queue._redis.lrange("jobs:pool:default:executing", 0, -1) == []
        assert await queue.requeue_stalled() == 0

    asyncio.run(_run())


def test_pool_size_caps_concurrent_jobs():
    async def _run():
        queue, _ = _queue()
        queue.add_pool("serial", 1)
        queue.add_pool("pair", 2)
        running = {"serial": 0, "pair": 0}
        peak = {"serial": 0, "pair": 0}
        done = []

        async def _work(ctx, pool):
            running[pool] += 1
            peak[pool] = max(peak[pool], running[pool])
            for _ in range(5):
                await asyncio.sleep(0)
            running[pool] -= 1
            done.append(pool)

        queue.register(JobType("serial.work", _work, pool="serial"))
        queue.register(JobType("pair.work", _work, pool="pair"))
        for _ in range(4):
            await queue.enqueue("serial.work", "serial")
            await queue.enqueue("pair.work", "pair")

        stop = asyncio.Event()
        pools = [asyncio.ensure_future(queue.run_pool(name, stop)) for name in ("serial", "pair")]
        for _ in range(1000):
            if len(done) == 8:
                break
            await asyncio.sleep(0)
        stop.set()
        await asyncio.gather(*pools)

        assert len(done) == 8
        assert peak == {"serial": 1, "pair": 2}

    asyncio.run(_run())
