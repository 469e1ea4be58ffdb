"""Tests for the billing sweeps driven by BillingScheduler."""

import asyncio
from collections import Counter
from datetime import UTC, date, datetime

import httpx
import pytest

from cadence.core.clock import ensure_utc
from cadence.models.invoice import Invoice, InvoiceStatus
from cadence.models.subscription import Subscription, SubscriptionStatus
from cadence.models.webhook_log import DeliveryStatus, WebhookLog
from cadence.schemas.invoice import LineItemInput
from cadence.schemas.subscription import CancelRequest, SubscriptionCreate
from cadence.schemas.webhook import WebhookCreate
from cadence.services.invoice_service import InvoiceService
from cadence.services.scheduler import (
    BillingScheduler,
    OutcomeStatus,
    SweepIntervals,
    SweepReport,
)
from cadence.services.subscription_lifecycle import SubscriptionLifecycle
from cadence.services.webhook_dispatcher import WebhookDispatcher, WebhookRegistrationService


@pytest.fixture
def scheduler(clock):
    return BillingScheduler(clock=clock)


@pytest.fixture
def lifecycle(db_session, clock):
    return SubscriptionLifecycle(db_session, clock=clock)


@pytest.fixture
def subscribe(lifecycle, tenant_id, create_customer, create_plan):
    """Create a subscription for a fresh customer starting at ``start``."""

    def _subscribe(start: datetime, **plan_kwargs) -> Subscription:
        return lifecycle.create_subscription(
            tenant_id,
            SubscriptionCreate(
                customer_id=create_customer().id,
                plan_id=create_plan(**plan_kwargs).id,
                start_date=start,
            ),
        )

    return _subscribe


def _invoices(db_session, subscription_id):
    db_session.expire_all()
    return (
        db_session.query(Invoice)
        .filter(Invoice.subscription_id == subscription_id)
        .order_by(Invoice.invoice_number)
        .all()
    )


class TestRenewalSweep:
    def test_renews_subscription_at_period_end(
        self, scheduler, subscribe, lifecycle, db_session, tenant_id, clock
    ):
        subscription = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        clock.advance(minutes=1)

        report = scheduler.run_renewals()

        assert report.total == 1
        assert report.succeeded == 1
        (invoice,) = _invoices(db_session, subscription.id)
        assert report.outcomes[0].detail == f"renewed: {invoice.invoice_number}"
        assert ensure_utc(invoice.billing_period_start) == datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        assert ensure_utc(invoice.billing_period_end) == datetime(2026, 4, 15, 9, 0, tzinfo=UTC)
        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.total_amount_cents == 58882

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert ensure_utc(subscription.current_period_start) == datetime(
            2026, 3, 15, 9, 0, tzinfo=UTC
        )
        assert ensure_utc(subscription.next_billing_date) == datetime(
            2026, 4, 15, 9, 0, tzinfo=UTC
        )
        history = lifecycle.get_history(tenant_id, subscription.id)
        assert [h.event_type for h in history] == ["activated", "renewed"]

    def test_second_run_is_a_no_op(self, scheduler, subscribe, db_session):
        subscription = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        scheduler.run_renewals()

        report = scheduler.run_renewals()

        assert report.total == 0
        assert len(_invoices(db_session, subscription.id)) == 1

    def test_already_invoiced_period_is_skipped(
        self, scheduler, subscribe, lifecycle, db_session, tenant_id
    ):
        subscription = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        scheduler.run_renewals()
        # Rewind the subscription as if the previous run crashed after invoicing
        db_session.refresh(subscription)
        subscription.current_period_start = datetime(2026, 2, 15, 9, 0, tzinfo=UTC)
        subscription.current_period_end = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        subscription.next_billing_date = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        db_session.commit()

        report = scheduler.run_renewals()

        assert report.skipped == 1
        assert report.outcomes[0].detail == "period already invoiced"
        assert len(_invoices(db_session, subscription.id)) == 1

    def test_lookahead_window(self, scheduler, subscribe, db_session):
        soon = subscribe(datetime(2026, 2, 15, 22, 0, tzinfo=UTC))
        later = subscribe(datetime(2026, 2, 17, 10, 0, tzinfo=UTC))

        report = scheduler.run_renewals()

        assert [o.item_id for o in report.outcomes] == [soon.id]
        assert len(_invoices(db_session, soon.id)) == 1
        assert _invoices(db_session, later.id) == []

    def test_auto_renew_off_is_not_swept(
        self, scheduler, lifecycle, tenant_id, create_customer, create_plan
    ):
        lifecycle.create_subscription(
            tenant_id,
            SubscriptionCreate(
                customer_id=create_customer().id,
                plan_id=create_plan().id,
                start_date=datetime(2026, 2, 15, 9, 0, tzinfo=UTC),
                auto_renew=False,
            ),
        )

        assert scheduler.run_renewals().total == 0

    def test_deferred_cancellation_closes_at_boundary(
        self, scheduler, subscribe, lifecycle, tenant_id, db_session
    ):
        ended = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        pending = subscribe(datetime(2026, 2, 15, 22, 0, tzinfo=UTC))
        for subscription in (ended, pending):
            lifecycle.cancel(tenant_id, subscription.id, CancelRequest(reason="Too pricey"))

        report = scheduler.run_renewals()

        outcomes = {o.item_id: o for o in report.outcomes}
        assert outcomes[ended.id].status == OutcomeStatus.SUCCEEDED
        assert outcomes[ended.id].detail == "cancelled"
        assert outcomes[pending.id].status == OutcomeStatus.SKIPPED
        assert outcomes[pending.id].detail == "cancellation pending"
        db_session.refresh(ended)
        db_session.refresh(pending)
        assert ended.status == SubscriptionStatus.CANCELLED.value
        assert ended.next_billing_date is None
        assert pending.status == SubscriptionStatus.ACTIVE.value
        assert _invoices(db_session, ended.id) == []

    def test_deferred_cancellation_closes_past_due_subscription(
        self, scheduler, subscribe, lifecycle, tenant_id, db_session, clock
    ):
        subscription = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        invoice_service = InvoiceService(db_session, clock=clock)
        invoice = invoice_service.generate_from_subscription(tenant_id, subscription.id)
        invoice_service.send(tenant_id, invoice.id)
        clock.advance(days=36)
        invoice_service.mark_overdue(tenant_id, invoice.id)
        lifecycle.cancel(tenant_id, subscription.id, CancelRequest(reason="Card declined"))
        assert subscription.status == SubscriptionStatus.PAST_DUE.value

        report = scheduler.run_renewals()

        assert [o.detail for o in report.outcomes] == ["cancelled"]
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED.value
        assert subscription.next_billing_date is None
        assert scheduler.run_renewals().total == 0

    def test_past_due_without_cancellation_is_not_swept(
        self, scheduler, subscribe, lifecycle, tenant_id, db_session
    ):
        subscription = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        lifecycle.mark_past_due(tenant_id, subscription.id, reason="Invoice overdue")

        report = scheduler.run_renewals()

        assert report.total == 0
        assert _invoices(db_session, subscription.id) == []

    def test_skipped_period_is_advanced(
        self, scheduler, subscribe, lifecycle, db_session, tenant_id, clock
    ):
        subscription = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        scheduler.run_renewals()
        db_session.refresh(subscription)
        subscription.current_period_start = datetime(2026, 2, 15, 9, 0, tzinfo=UTC)
        subscription.current_period_end = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        subscription.next_billing_date = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)
        db_session.commit()

        assert scheduler.run_renewals().skipped == 1
        assert scheduler.run_renewals().total == 0

        db_session.refresh(subscription)
        assert ensure_utc(subscription.current_period_start) == datetime(
            2026, 3, 15, 9, 0, tzinfo=UTC
        )
        assert ensure_utc(subscription.next_billing_date) == datetime(
            2026, 4, 15, 9, 0, tzinfo=UTC
        )

        clock.advance(days=31)
        report = scheduler.run_renewals()

        assert report.succeeded == 1
        invoices = _invoices(db_session, subscription.id)
        assert len(invoices) == 2
        assert ensure_utc(invoices[-1].billing_period_start) == datetime(
            2026, 4, 15, 9, 0, tzinfo=UTC
        )

    def test_failure_is_isolated(self, scheduler, subscribe, db_session, caplog):
        broken = subscribe(datetime(2026, 2, 15, 8, 0, tzinfo=UTC))
        healthy = subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))
        db_session.refresh(broken)
        broken.billing_cycle = "daily"
        db_session.commit()

        report = scheduler.run_renewals()

        assert report.total == 2
        assert report.succeeded == 1
        (failure,) = report.failures
        assert failure.item_id == broken.id
        assert "daily" in failure.detail
        assert _invoices(db_session, broken.id) == []
        assert len(_invoices(db_session, healthy.id)) == 1
        assert "renewals failed" in caplog.text


class TestTrialSweep:
    def test_expires_ended_trials(self, scheduler, subscribe, db_session):
        ended = subscribe(datetime(2026, 2, 20, 9, 0, tzinfo=UTC), trial_days=14)
        running = subscribe(datetime(2026, 3, 10, 9, 0, tzinfo=UTC), trial_days=14)

        report = scheduler.run_trial_expirations()

        assert [o.item_id for o in report.outcomes] == [ended.id]
        assert report.outcomes[0].detail == "expired"
        db_session.refresh(ended)
        db_session.refresh(running)
        assert ended.status == SubscriptionStatus.EXPIRED.value
        assert running.status == SubscriptionStatus.TRIAL.value

    def test_trial_with_pending_cancellation_is_cancelled(
        self, scheduler, subscribe, lifecycle, tenant_id, db_session
    ):
        subscription = subscribe(datetime(2026, 2, 20, 9, 0, tzinfo=UTC), trial_days=14)
        lifecycle.cancel(tenant_id, subscription.id, CancelRequest())

        report = scheduler.run_trial_expirations()

        assert report.outcomes[0].detail == "cancelled"
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED.value


class TestOverdueSweep:
    def test_marks_past_due_invoices(
        self, scheduler, clock, tenant_id, create_customer, db_session
    ):
        service = InvoiceService(db_session, clock=clock)
        customer = create_customer()
        items = [LineItemInput(description="Setup", unit_price_cents=10000)]
        late = service.create_invoice(tenant_id, customer.id, items, issue_date=date(2026, 2, 1))
        service.send(tenant_id, late.id)
        on_time = service.create_invoice(tenant_id, customer.id, items)
        service.send(tenant_id, on_time.id)
        draft = service.create_invoice(tenant_id, customer.id, items, issue_date=date(2026, 2, 1))

        report = scheduler.run_overdue_invoices()

        assert [o.item_id for o in report.outcomes] == [late.id]
        assert report.outcomes[0].detail == late.invoice_number
        db_session.expire_all()
        assert db_session.get(Invoice, late.id).status == InvoiceStatus.OVERDUE.value
        assert db_session.get(Invoice, on_time.id).status == InvoiceStatus.SENT.value
        assert db_session.get(Invoice, draft.id).status == InvoiceStatus.DRAFT.value


class TestWebhookRetrySweep:
    def test_redelivers_due_logs(self, clock, db_session, tenant_id):
        responses = iter([500, 200])

        def handler(request):
            return httpx.Response(next(responses))

        client = httpx.Client(transport=httpx.MockTransport(handler))
        WebhookRegistrationService(db_session).register(
            tenant_id,
            WebhookCreate(url="https://hooks.example.com/billing", events=["invoice.created"]),
        )
        dispatcher = WebhookDispatcher(db_session, clock=clock, client=client)
        (log_id,) = dispatcher.fire(tenant_id, "invoice.created", {})
        dispatcher.deliver(log_id)

        scheduler = BillingScheduler(
            clock=clock,
            dispatcher_factory=lambda db, clk: WebhookDispatcher(db, clock=clk, client=client),
        )
        assert scheduler.run_webhook_retries().total == 0

        clock.advance(minutes=5)
        report = scheduler.run_webhook_retries()

        assert report.succeeded == 1
        assert report.outcomes[0].item_id == log_id
        db_session.expire_all()
        assert db_session.get(WebhookLog, log_id).status == DeliveryStatus.DELIVERED.value


class TestRunAll:
    def test_reports_every_sweep(self, scheduler, subscribe):
        subscribe(datetime(2026, 2, 15, 9, 0, tzinfo=UTC))

        reports = scheduler.run_all()

        assert list(reports) == [
            "renewals",
            "trial_expirations",
            "overdue_invoices",
            "webhook_retries",
        ]
        assert reports["renewals"].succeeded == 1
        assert all(report.finished_at is not None for report in reports.values())


class TestBackgroundLoops:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        scheduler = BillingScheduler(
            clock=clock,
            intervals=SweepIntervals(
                renewals=0.01,
                trial_expirations=0.01,
                overdue_invoices=0.01,
                webhook_retries=0.01,
            ),
        )
        calls: Counter[str] = Counter()

        def counting(name):
            def run():
                calls[name] += 1
                return SweepReport(sweep=name, started_at=clock.now())

            return run

        for name in ("renewals", "trial_expirations", "overdue_invoices", "webhook_retries"):
            setattr(scheduler, f"run_{name}", counting(name))

        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert not scheduler.running
        assert set(calls) == {
            "renewals",
            "trial_expirations",
            "overdue_invoices",
            "webhook_retries",
        }
        assert calls["renewals"] >= 2

    @pytest.mark.asyncio
    async def test_crashing_sweep_keeps_loop_alive(self, clock):
        scheduler = BillingScheduler(
            clock=clock,
            intervals=SweepIntervals(0.01, 3600, 3600, 3600),
        )
        calls = []

        def crash():
            calls.append(1)
            raise RuntimeError("boom")

        scheduler.run_renewals = crash
        scheduler.run_trial_expirations = lambda: SweepReport("t", clock.now())
        scheduler.run_overdue_invoices = lambda: SweepReport("o", clock.now())
        scheduler.run_webhook_retries = lambda: SweepReport("w", clock.now())

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, clock):
        await BillingScheduler(clock=clock).stop()
