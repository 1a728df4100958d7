import asyncio
import logging
import signal

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from common.config import settings
from common.hub import build_hub

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")

MAINTENANCE_INTERVAL_SECONDS = 24 * 3600

# DB Setup
engine = create_async_engine(settings.DATABASE_URL)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

hub = build_hub(settings, redis_client, AsyncSessionLocal)


async def maintenance_loop(stop: asyncio.Event):
    """Enqueue retention compaction once a day when retention is configured."""
    while not stop.is_set():
        if settings.MESSAGE_RETENTION_DAYS:
            try:
                await hub.jobs.enqueue("messages.compact", settings.MESSAGE_RETENTION_DAYS)
            except Exception as e:
                logger.error(f"Failed to enqueue message compaction: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=MAINTENANCE_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass


async def worker_main():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    pools = hub.jobs.pools
    logger.info(f"Worker started, pools: {pools}")
    await asyncio.gather(
        *(hub.jobs.run_pool(pool, stop) for pool in pools),
        hub.jobs.run_scheduler(settings.JOB_SCHEDULER_INTERVAL_SECONDS, stop),
        maintenance_loop(stop),
    )
    logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(worker_main())
