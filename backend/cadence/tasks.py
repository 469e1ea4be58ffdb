"""On-demand enqueueing of the billing sweeps the worker otherwise runs on cron."""

from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from cadence.core.config import settings

redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    return await create_pool(redis_settings)


async def enqueue_task(
    task_name: str, *args: Any, job_id: str | None = None, **kwargs: Any
) -> Job | None:
    """Enqueue ``task_name`` on the worker queue.

    Args:
        task_name: Name of a function registered in ``WorkerSettings.functions``.
        job_id: Optional arq job id; while a job with this id is queued or
            running, enqueueing it again is a no-op.

    Returns:
        The arq job, or None when ``job_id`` is already taken.
    """
    pool = await get_redis_pool()
    try:
        if job_id is not None:
            kwargs["_job_id"] = job_id
        return await pool.enqueue_job(task_name, *args, **kwargs)
    finally:
        await pool.close()


async def enqueue_renewals() -> Job | None:
    """Run the renewal sweep now instead of waiting for the nightly cron."""
    return await enqueue_task("process_renewals_task", job_id="sweep:renewals")


async def enqueue_trial_expirations() -> Job | None:
    return await enqueue_task("process_trial_expirations_task", job_id="sweep:trial_expirations")


async def enqueue_overdue_invoices() -> Job | None:
    return await enqueue_task("process_overdue_invoices_task", job_id="sweep:overdue_invoices")


async def enqueue_webhook_retries() -> Job | None:
    return await enqueue_task("retry_webhooks_task", job_id="sweep:webhook_retries")
