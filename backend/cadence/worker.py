import logging
from typing import Any

from arq import cron

from cadence.core.database import init_db
from cadence.services.scheduler import BillingScheduler, SweepReport
from cadence.services.webhook_dispatcher import close_delivery_resources
from cadence.tasks import redis_settings

logger = logging.getLogger(__name__)


def _summarize(report: SweepReport) -> dict[str, int]:
    return {
        "total": report.total,
        "succeeded": report.succeeded,
        "skipped": report.skipped,
        "failed": report.failed,
    }


async def process_renewals_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: renew subscriptions whose next billing date falls within the lookahead.

    Runs daily at 01:00.
    """
    report = BillingScheduler().run_renewals()
    return _summarize(report)


async def process_trial_expirations_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: expire (or cancel) trials whose end date has passed.

    Runs daily at 02:00.
    """
    report = BillingScheduler().run_trial_expirations()
    return _summarize(report)


async def process_overdue_invoices_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: flag sent invoices past their due date as overdue.

    Runs daily at 03:00.
    """
    report = BillingScheduler().run_overdue_invoices()
    return _summarize(report)


async def retry_webhooks_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: re-deliver webhooks whose backoff has elapsed.

    Runs every 5 minutes.
    """
    report = BillingScheduler().run_webhook_retries()
    if report.total > 0:
        logger.info("Retried %d webhook deliveries", report.total)
    return _summarize(report)


async def startup(ctx: dict[str, Any]) -> None:
    # Without migrations the worker owns schema creation
    init_db()


async def shutdown(ctx: dict[str, Any]) -> None:
    close_delivery_resources()


class WorkerSettings:
    functions = [
        process_renewals_task,
        process_trial_expirations_task,
        process_overdue_invoices_task,
        retry_webhooks_task,
    ]
    cron_jobs = [
        cron(process_renewals_task, hour=1, minute=0),
        cron(process_trial_expirations_task, hour=2, minute=0),
        cron(process_overdue_invoices_task, hour=3, minute=0),
        cron(
            retry_webhooks_task,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
        ),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
