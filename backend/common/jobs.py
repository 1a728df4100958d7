"""Durable job queue on Redis with per-type retry policies and worker pools.

Keys under ``{prefix}``:

* ``{prefix}:job:{id}``        job record (JSON)
* ``{prefix}:pool:{pool}:ready``  ids ready to run
* ``{prefix}:pool:{pool}:executing``  ids claimed by a worker of the pool
* ``{prefix}:scheduled``       zset of delayed ids scored by run-at epoch
* ``{prefix}:failed``          ids that exhausted their attempts

A job record is written before its id is pushed anywhere, so a worker never
pops an id it cannot load. Workers claim ids with BLMOVE into the executing
list and drop them once the attempt is settled; ids whose lease ran out are
sent back by ``requeue_stalled``. Delayed ids are moved to their ready list by
``promote_due``; the ZREM claim makes concurrent schedulers safe.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from common.errors import JobPending, StoreUnavailable, is_retryable
from common.models import EventLog

logger = logging.getLogger(__name__)

DEFAULT_POOL = "default"


class JobStatus(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RetryPolicy:
    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        raise NotImplementedError


class FibonacciBackoff(RetryPolicy):
    def __init__(self, base: float = 1.0, max_delay: float = 3600.0):
        self.base = base
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        # base, 2*base, 3*base, 5*base, 8*base, ...
        a, b = self.base, self.base * 2
        for _ in range(max(attempt, 1) - 1):
            a, b = b, a + b
            if a >= self.max_delay:
                break
        return min(a, self.max_delay)


class FixedDelay(RetryPolicy):
    def __init__(self, seconds: float):
        self.seconds = seconds

    def delay(self, attempt: int) -> float:
        return self.seconds


class NoRetry(RetryPolicy):
    def delay(self, attempt: int) -> float:
        return 0.0


JobHandler = Callable[..., Awaitable[Any]]
FailureHook = Callable[[Any, "Job", BaseException], Awaitable[None]]


@dataclass
class JobType:
    """A named kind of job. ``max_attempts`` counts the first run."""

    name: str
    handler: JobHandler
    pool: str = DEFAULT_POOL
    max_attempts: int = 10
    policy: RetryPolicy = field(default_factory=FibonacciBackoff)
    on_failure: Optional[FailureHook] = None

    def __post_init__(self):
        if isinstance(self.policy, NoRetry):
            self.max_attempts = 1
        if self.max_attempts < 1:
            raise ValueError(f"job type {self.name} needs at least one attempt")


@dataclass
class Job:
    id: str
    type: str
    pool: str
    args: List[Any]
    status: JobStatus = JobStatus.QUEUED
    attempt: int = 0
    max_attempts: int = 1
    created_at: float = 0.0
    run_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    last_error: Optional[str] = None
    result: Any = None

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = self.status.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        data["status"] = JobStatus(data["status"])
        return cls(**data)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except TypeError:
        return repr(value)


class JobQueue:
    def __init__(
        self,
        redis,
        prefix: str = "jobs",
        session_factory=None,
        default_pool_size: int = 10,
        finished_ttl: int = 3600,
        sync_timeout: float = 20.0,
        poll_timeout: int = 5,
        lease_seconds: float = 900.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._redis = redis
        self._prefix = prefix
        self._session_factory = session_factory
        self._finished_ttl = finished_ttl
        self.sync_timeout = sync_timeout
        self._poll_timeout = poll_timeout
        # Longer than any handler may legitimately run.
        self._lease = lease_seconds
        self._clock = clock
        self._sleep = sleep
        self._types: Dict[str, JobType] = {}
        self._pools: Dict[str, int] = {DEFAULT_POOL: default_pool_size}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._detached: set = set()
        self._unstarted: set = set()
        # Passed as the first argument to every handler.
        self.context: Any = None

    # --- registration ---

    def add_pool(self, name: str, size: int) -> None:
        if size < 1:
            raise ValueError(f"pool {name} needs at least one worker")
        self._pools[name] = size
        self._semaphores.pop(name, None)

    def register(self, job_type: JobType) -> JobType:
        if job_type.pool not in self._pools:
            raise ValueError(f"job type {job_type.name} uses unknown pool {job_type.pool}")
        self._types[job_type.name] = job_type
        return job_type

    def job_type(self, name: str) -> JobType:
        try:
            return self._types[name]
        except KeyError:
            raise ValueError(f"job type {name} is not registered") from None

    @property
    def pools(self) -> Dict[str, int]:
        return dict(self._pools)

    # --- keys ---

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _ready_key(self, pool: str) -> str:
        return f"{self._prefix}:pool:{pool}:ready"

    def _executing_key(self, pool: str) -> str:
        return f"{self._prefix}:pool:{pool}:executing"

    @property
    def _scheduled_key(self) -> str:
        return f"{self._prefix}:scheduled"

    @property
    def _failed_key(self) -> str:
        return f"{self._prefix}:failed"

    def _semaphore(self, pool: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(pool)
        if sem is None:
            sem = asyncio.Semaphore(self._pools[pool])
            self._semaphores[pool] = sem
        return sem

    # --- producer API ---

    def _new_job(self, job_type: JobType, args) -> Job:
        args = list(args)
        try:
            json.dumps(args)
        except TypeError as e:
            raise ValueError(f"arguments for job {job_type.name} are not serializable: {e}") from e
        now = self._clock()
        return Job(
            id=str(uuid.uuid4()),
            type=job_type.name,
            pool=job_type.pool,
            args=args,
            max_attempts=job_type.max_attempts,
            created_at=now,
            run_at=now,
        )

    async def enqueue(self, name: str, *args: Any) -> str:
        job = self._new_job(self.job_type(name), args)
        try:
            await self._save(job)
            await self._redis.rpush(self._ready_key(job.pool), job.id)
        except RedisError as e:
            raise StoreUnavailable(f"can't enqueue {name}: {e}") from e
        logger.info(f"Enqueued job {name} (id: {job.id}, pool: {job.pool})")
        return job.id

    async def schedule(self, name: str, delay: float, *args: Any) -> str:
        job = self._new_job(self.job_type(name), args)
        job.run_at = job.created_at + max(delay, 0)
        try:
            await self._save(job)
            await self._redis.zadd(self._scheduled_key, {job.id: job.run_at})
        except RedisError as e:
            raise StoreUnavailable(f"can't schedule {name}: {e}") from e
        logger.info(f"Scheduled job {name} (id: {job.id}) in {delay}s")
        return job.id

    async def do_sync(self, name: str, *args: Any, timeout: Optional[float] = None) -> Any:
        """Run a job inline with its retry policy, bounded by ``timeout``.

        Returns the handler's result or raises its last error. An attempt is
        never cut short: past the deadline the caller gets JobPending while
        the attempt chain carries on in the background and settles the job
        itself. The on_failure hook only runs for such detached jobs, since
        an attached caller learns about the failure directly.
        """
        job_type = self.job_type(name)
        job = self._new_job(job_type, args)
        deadline = self.sync_timeout if timeout is None else timeout
        detached = False

        async def _attempts():
            while True:
                job.attempt += 1
                job.status = JobStatus.EXECUTING
                job.started_at = self._clock()
                await self._save_quietly(job)
                try:
                    async with self._semaphore(job.pool):
                        result = await job_type.handler(self.context, *job.args)
                except Exception as e:
                    job.last_error = f"{type(e).__name__}: {e}"
                    if is_retryable(e) and job.attempt < job.max_attempts:
                        delay = job_type.policy.delay(job.attempt)
                        logger.warning(
                            f"Sync job {name} attempt {job.attempt}/{job.max_attempts} failed, retrying in {delay}s: {e}"
                        )
                        await self._sleep(delay)
                        continue
                    await self._mark_failed(job, e)
                    if detached:
                        await self._run_failure_hook(job_type, job, e)
                    raise
                await self._mark_finished(job, result)
                return result

        task = asyncio.ensure_future(_attempts())
        try:
            return await asyncio.wait_for(asyncio.shield(task), deadline)
        except asyncio.TimeoutError:
            detached = True
            self._detach(task)
            logger.warning(f"Sync job {name} ({job.id}) still running after {deadline}s, detaching")
            raise JobPending(f"job {name} did not finish within {deadline}s", job_id=job.id) from None
        except asyncio.CancelledError:
            detached = True
            self._detach(task)
            raise

    def _detach(self, task: asyncio.Future) -> None:
        self._detached.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Future) -> None:
        self._detached.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Detached sync job failed: {task.exception()}")

    async def get_job(self, job_id: str) -> Optional[Job]:
        try:
            raw = await self._redis.get(self._job_key(job_id))
        except RedisError as e:
            raise StoreUnavailable(f"can't load job {job_id}: {e}") from e
        if raw is None:
            return None
        return Job.from_json(raw)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started. Executing jobs are left alone."""
        job = await self.get_job(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            return False
        try:
            await self._redis.zrem(self._scheduled_key, job_id)
            await self._redis.lrem(self._ready_key(job.pool), 0, job_id)
            job.status = JobStatus.CANCELLED
            job.finished_at = self._clock()
            await self._save(job, ttl=self._finished_ttl)
        except RedisError as e:
            raise StoreUnavailable(f"can't cancel job {job_id}: {e}") from e
        logger.info(f"Cancelled job {job.type} (id: {job_id})")
        return True

    async def failed_jobs(self, limit: int = 100) -> List[Job]:
        try:
            ids = await self._redis.lrange(self._failed_key, -limit, -1)
        except RedisError as e:
            raise StoreUnavailable(f"can't list failed jobs: {e}") from e
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    # --- scheduler ---

    async def promote_due(self, batch: int = 100) -> int:
        now = self._clock()
        due = await self._redis.zrangebyscore(self._scheduled_key, "-inf", now, start=0, num=batch)
        promoted = 0
        for job_id in due:
            # Whoever removes the id owns the promotion.
            if not await self._redis.zrem(self._scheduled_key, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                continue
            await self._redis.rpush(self._ready_key(job.pool), job_id)
            promoted += 1
        return promoted

    async def run_scheduler(self, interval: float = 1.0, stop: Optional[asyncio.Event] = None) -> None:
        logger.info("Job scheduler started")
        while stop is None or not stop.is_set():
            try:
                promoted = await self.promote_due()
                if promoted:
                    logger.info(f"Promoted {promoted} delayed jobs")
                await self.requeue_stalled()
            except (RedisError, StoreUnavailable) as e:
                logger.error(f"Error in scheduler loop: {e}")
            await self._sleep(interval)

    async def requeue_stalled(self) -> int:
        """Send jobs abandoned by dead workers back to their ready lists.

        An executing job whose lease ran out counts as a spent attempt: it is
        queued again while its budget lasts and marked failed otherwise.
        """
        now = self._clock()
        requeued = 0
        unstarted = set()
        for pool in list(self._pools):
            executing = self._executing_key(pool)
            for job_id in await self._redis.lrange(executing, 0, -1):
                job = await self.get_job(job_id)
                if job is None or job.status in (JobStatus.FINISHED, JobStatus.FAILED, JobStatus.CANCELLED):
                    await self._redis.lrem(executing, 1, job_id)
                    continue
                if job.status == JobStatus.EXECUTING:
                    if (job.started_at or 0) + self._lease > now:
                        continue
                    job.last_error = f"worker lost during attempt {job.attempt}"
                    if job.attempt >= job.max_attempts:
                        await self._mark_failed(job, None)
                        await self._redis.lrem(executing, 1, job_id)
                        continue
                    job.status = JobStatus.QUEUED
                    await self._save(job)
                elif await self._redis.zscore(self._scheduled_key, job_id) is not None:
                    # The retry is already scheduled; only the claim was left behind.
                    await self._redis.lrem(executing, 1, job_id)
                    continue
                elif job_id not in self._unstarted:
                    # Claimed a moment ago; the worker has until the next sweep to start it.
                    unstarted.add(job_id)
                    continue
                await self._redis.rpush(self._ready_key(pool), job_id)
                await self._redis.lrem(executing, 1, job_id)
                logger.warning(f"Requeued stalled job {job.type} (id: {job_id}, attempt {job.attempt}/{job.max_attempts})")
                await self._emit("job_requeued", job, {"error": job.last_error})
                requeued += 1
        self._unstarted = unstarted
        return requeued

    # --- consumer ---

    async def run_once(self, pool: str, timeout: Optional[int] = None) -> bool:
        """Claim and run one job from ``pool``. Returns False when nothing ran."""
        executing = self._executing_key(pool)
        job_id = await self._redis.blmove(
            self._ready_key(pool), executing, self._poll_timeout if timeout is None else timeout
        )
        if not job_id:
            return False
        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"Dropping unknown job id {job_id} from pool {pool}")
            await self._redis.lrem(executing, 1, job_id)
            return False
        if job.status != JobStatus.QUEUED:
            logger.info(f"Skipping job {job_id} in state {job.status.value}")
            await self._redis.lrem(executing, 1, job_id)
            return False
        await self._execute(job)
        return True

    async def run_pool(self, pool: str, stop: Optional[asyncio.Event] = None) -> None:
        size = self._pools[pool]
        logger.info(f"Starting pool {pool} with {size} workers")
        await asyncio.gather(*(self._worker_loop(pool, stop) for _ in range(size)))

    async def _worker_loop(self, pool: str, stop: Optional[asyncio.Event]) -> None:
        while stop is None or not stop.is_set():
            try:
                await self.run_once(pool)
            except Exception as e:
                logger.error(f"Error in worker loop for pool {pool}: {e}")
                await self._sleep(5)

    async def _execute(self, job: Job) -> None:
        job_type = self._types.get(job.type)
        if job_type is None:
            job.last_error = f"job type {job.type} is not registered"
            await self._mark_failed(job, None)
            await self._release(job)
            return

        job.attempt += 1
        job.status = JobStatus.EXECUTING
        job.started_at = self._clock()
        await self._save(job)
        logger.info(f"Processing job: {job.type} (id: {job.id}, attempt: {job.attempt})")

        try:
            async with self._semaphore(job.pool):
                result = await job_type.handler(self.context, *job.args)
        except Exception as e:
            await self._handle_failure(job, job_type, e)
        else:
            await self._mark_finished(job, result)
        await self._release(job)

    async def _release(self, job: Job) -> None:
        try:
            await self._redis.lrem(self._executing_key(job.pool), 1, job.id)
        except RedisError as e:
            logger.error(f"Can't release claim on job {job.id}: {e}")

    async def _handle_failure(self, job: Job, job_type: JobType, error: Exception) -> None:
        job.last_error = f"{type(error).__name__}: {error}"
        if is_retryable(error) and job.attempt < job.max_attempts:
            delay = job_type.policy.delay(job.attempt)
            job.status = JobStatus.QUEUED
            job.run_at = self._clock() + delay
            await self._save(job)
            await self._redis.zadd(self._scheduled_key, {job.id: job.run_at})
            logger.error(
                f"Job {job.type} failed (attempt {job.attempt}/{job.max_attempts}), retrying in {delay}s: {error}"
            )
            await self._emit("job_retry_scheduled", job, {"delay_seconds": delay, "error": str(error)})
            return

        await self._mark_failed(job, error)
        await self._run_failure_hook(job_type, job, error)

    async def _run_failure_hook(self, job_type: JobType, job: Job, error: BaseException) -> None:
        if job_type.on_failure is None:
            return
        try:
            await job_type.on_failure(self.context, job, error)
        except Exception as hook_error:
            logger.error(f"on_failure hook for {job.type} ({job.id}) failed: {hook_error}")

    async def _mark_finished(self, job: Job, result: Any) -> None:
        job.status = JobStatus.FINISHED
        job.finished_at = self._clock()
        job.result = _jsonable(result)
        job.last_error = None
        await self._save_quietly(job, ttl=self._finished_ttl)
        logger.info(f"Job {job.type} ({job.id}) finished after {job.attempt} attempt(s)")
        await self._emit("job_finished", job)

    async def _mark_failed(self, job: Job, error: Optional[BaseException]) -> None:
        job.status = JobStatus.FAILED
        job.finished_at = self._clock()
        try:
            await self._save(job)
            await self._redis.rpush(self._failed_key, job.id)
        except RedisError as e:
            logger.error(f"Can't record failed job {job.id}: {e}")
        logger.error(f"Job {job.type} ({job.id}) failed after {job.attempt} attempt(s): {job.last_error}")
        await self._emit("job_failed", job, {"error": job.last_error})

    async def _save(self, job: Job, ttl: Optional[int] = None) -> None:
        await self._redis.set(self._job_key(job.id), job.to_json(), ex=ttl)

    async def _save_quietly(self, job: Job, ttl: Optional[int] = None) -> None:
        try:
            await self._save(job, ttl=ttl)
        except RedisError as e:
            logger.error(f"Can't persist job {job.id} state {job.status.value}: {e}")

    async def _emit(self, event_type: str, job: Job, extra: Optional[dict] = None) -> None:
        if self._session_factory is None:
            return
        payload = {
            "type": job.type,
            "job_id": job.id,
            "attempt": job.attempt,
            "max_attempts": job.max_attempts,
            "pool": job.pool,
        }
        if extra:
            payload.update(extra)
        try:
            async with self._session_factory() as db:
                db.add(EventLog(
                    id=str(uuid.uuid4()),
                    request_id=f"job_{job.id}",
                    user_id="system",
                    event_type=event_type,
                    entity_type="job",
                    entity_id=job.id,
                    payload_json=payload,
                ))
                await db.commit()
        except Exception as log_error:
            logger.error(f"Failed to emit job event {event_type} for {job.id}: {log_error}")
