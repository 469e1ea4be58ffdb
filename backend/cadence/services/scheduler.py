"""Time-driven billing sweeps.

``BillingScheduler`` owns no global state: it is built with a session
factory and a clock, so a test can drive one deterministic pass with
``run_all`` while production runs the sweeps as background loops via
``start``/``stop`` (or as arq cron jobs, see ``cadence.worker``).
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from cadence.core.clock import Clock, SystemClock
from cadence.core.config import settings
from cadence.core.database import new_session
from cadence.models.webhook_log import DeliveryStatus
from cadence.repositories.invoice_repository import InvoiceRepository
from cadence.repositories.subscription_repository import SubscriptionRepository
from cadence.repositories.webhook_log_repository import WebhookLogRepository
from cadence.services.invoice_service import InvoiceService
from cadence.services.subscription_lifecycle import RenewalAction, SubscriptionLifecycle
from cadence.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
DispatcherFactory = Callable[[Session, Clock], WebhookDispatcher]
Candidate = tuple[UUID, UUID]


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemOutcome:
    """Result of processing one candidate in a sweep."""

    tenant_id: UUID
    item_id: UUID
    status: OutcomeStatus
    detail: str | None = None


@dataclass
class SweepReport:
    """Aggregated per-item outcomes of one sweep run."""

    sweep: str
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(OutcomeStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def failures(self) -> list[ItemOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == OutcomeStatus.FAILED]


@dataclass(frozen=True)
class SweepIntervals:
    """Seconds between background runs of each sweep."""

    renewals: float = settings.RENEWAL_SWEEP_INTERVAL_SECONDS
    trial_expirations: float = settings.TRIAL_SWEEP_INTERVAL_SECONDS
    overdue_invoices: float = settings.OVERDUE_SWEEP_INTERVAL_SECONDS
    webhook_retries: float = settings.WEBHOOK_RETRY_SWEEP_INTERVAL_SECONDS


def _default_dispatcher(db: Session, clock: Clock) -> WebhookDispatcher:
    return WebhookDispatcher(db, clock=clock)


class BillingScheduler:
    """Runs renewal, trial-expiry, overdue and webhook-retry sweeps."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        clock: Clock | None = None,
        dispatcher_factory: DispatcherFactory | None = None,
        intervals: SweepIntervals | None = None,
        renewal_lookahead: timedelta | None = None,
    ):
        self.session_factory = session_factory or new_session
        self.clock = clock or SystemClock()
        self.dispatcher_factory = dispatcher_factory or _default_dispatcher
        self.intervals = intervals or SweepIntervals()
        self.renewal_lookahead = renewal_lookahead or timedelta(
            hours=settings.RENEWAL_LOOKAHEAD_HOURS
        )
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    def _sweep(
        self,
        name: str,
        list_candidates: Callable[[Session], list[Candidate]],
        handle: Callable[[Session, UUID, UUID], ItemOutcome],
    ) -> SweepReport:
        report = SweepReport(sweep=name, started_at=self.clock.now())

        db = self.session_factory()
        try:
            candidates = list_candidates(db)
        finally:
            db.close()

        for tenant_id, item_id in candidates:
            db = self.session_factory()
            try:
                outcome = handle(db, tenant_id, item_id)
            except Exception as exc:
                logger.exception("%s failed for %s (tenant %s)", name, item_id, tenant_id)
                outcome = ItemOutcome(tenant_id, item_id, OutcomeStatus.FAILED, str(exc))
            finally:
                db.close()
            report.outcomes.append(outcome)

        report.finished_at = self.clock.now()
        if report.total:
            logger.info(
                "%s: %d candidate(s), %d succeeded, %d skipped, %d failed",
                name,
                report.total,
                report.succeeded,
                report.skipped,
                report.failed,
            )
        return report

    def run_renewals(self) -> SweepReport:
        """Renew (or close at period end) subscriptions billing within the lookahead window."""
        now = self.clock.now()
        cutoff = now + self.renewal_lookahead

        def handle(db: Session, tenant_id: UUID, subscription_id: UUID) -> ItemOutcome:
            lifecycle = SubscriptionLifecycle(
                db, clock=self.clock, dispatcher=self.dispatcher_factory(db, self.clock)
            )
            result = lifecycle.renew(tenant_id, subscription_id, now=now)
            if result.action == RenewalAction.SKIPPED:
                return ItemOutcome(tenant_id, subscription_id, OutcomeStatus.SKIPPED, result.reason)
            detail = result.action.value
            if result.invoice is not None:
                detail = f"{detail}: {result.invoice.invoice_number}"
            return ItemOutcome(tenant_id, subscription_id, OutcomeStatus.SUCCEEDED, detail)

        return self._sweep(
            "renewals",
            lambda db: SubscriptionRepository(db).list_due_for_renewal(cutoff),
            handle,
        )

    def run_trial_expirations(self) -> SweepReport:
        now = self.clock.now()

        def handle(db: Session, tenant_id: UUID, subscription_id: UUID) -> ItemOutcome:
            lifecycle = SubscriptionLifecycle(
                db, clock=self.clock, dispatcher=self.dispatcher_factory(db, self.clock)
            )
            subscription = lifecycle.expire_trial(tenant_id, subscription_id, now=now)
            return ItemOutcome(
                tenant_id, subscription_id, OutcomeStatus.SUCCEEDED, str(subscription.status)
            )

        return self._sweep(
            "trial_expirations",
            lambda db: SubscriptionRepository(db).list_expired_trials(now),
            handle,
        )

    def run_overdue_invoices(self) -> SweepReport:
        today = self.clock.today()

        def handle(db: Session, tenant_id: UUID, invoice_id: UUID) -> ItemOutcome:
            service = InvoiceService(
                db, clock=self.clock, dispatcher=self.dispatcher_factory(db, self.clock)
            )
            invoice = service.mark_overdue(tenant_id, invoice_id)
            return ItemOutcome(
                tenant_id, invoice_id, OutcomeStatus.SUCCEEDED, str(invoice.invoice_number)
            )

        return self._sweep(
            "overdue_invoices",
            lambda db: InvoiceRepository(db).list_overdue_candidates(today),
            handle,
        )

    def run_webhook_retries(self) -> SweepReport:
        now = self.clock.now()

        def handle(db: Session, tenant_id: UUID, log_id: UUID) -> ItemOutcome:
            dispatcher = self.dispatcher_factory(db, self.clock)
            if dispatcher.deliver(log_id):
                return ItemOutcome(tenant_id, log_id, OutcomeStatus.SUCCEEDED, "delivered")
            log = WebhookLogRepository(db).get_by_id(log_id)
            status = log.status if log else DeliveryStatus.FAILED.value
            error = log.error_message if log else "log not found"
            return ItemOutcome(tenant_id, log_id, OutcomeStatus.FAILED, f"{status}: {error}")

        return self._sweep(
            "webhook_retries",
            lambda db: WebhookLogRepository(db).get_due_for_retry(
                now, settings.WEBHOOK_RETRY_BATCH_SIZE
            ),
            handle,
        )

    def run_all(self) -> dict[str, SweepReport]:
        """Run every sweep once, in order, against the current clock."""
        reports = {}
        for sweep in (
            self.run_renewals,
            self.run_trial_expirations,
            self.run_overdue_invoices,
            self.run_webhook_retries,
        ):
            report = sweep()
            reports[report.sweep] = report
        return reports

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start one background loop per sweep on the running event loop."""
        if self._tasks:
            logger.warning("Billing scheduler already running")
            return

        self._stop_event = asyncio.Event()
        loops = (
            (self.run_renewals, self.intervals.renewals),
            (self.run_trial_expirations, self.intervals.trial_expirations),
            (self.run_overdue_invoices, self.intervals.overdue_invoices),
            (self.run_webhook_retries, self.intervals.webhook_retries),
        )
        self._tasks = [
            asyncio.create_task(self._loop(sweep, interval), name=sweep.__name__)
            for sweep, interval in loops
        ]
        logger.info("Billing scheduler started")

    async def stop(self) -> None:
        """Signal the loops to exit and wait for any in-flight sweep to finish."""
        if not self._tasks or self._stop_event is None:
            return
        self._stop_event.set()
        await asyncio.gather(*self._tasks)
        self._tasks = []
        logger.info("Billing scheduler stopped")

    async def _loop(self, sweep: Callable[[], SweepReport], interval: float) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(sweep)
            except Exception:
                logger.exception("Sweep %s crashed", sweep.__name__)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass
