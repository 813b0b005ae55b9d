from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from app.core.config import settings

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        Job object from arq
    """
    pool = await get_redis_pool()
    try:
        job = await pool.enqueue_job(task_name, *args, **kwargs)
        return job  # type: ignore[return-value]
    finally:
        await pool.close()


async def enqueue_outbound_delivery() -> Job:
    """Deliver pending outbound messages now instead of waiting for the next cron run."""
    return await enqueue_task("deliver_outbound_messages_task")


async def enqueue_parked_event_retry() -> Job:
    return await enqueue_task("retry_parked_events_task")


async def enqueue_grace_period_expiry() -> Job:
    return await enqueue_task("expire_grace_periods_task")
