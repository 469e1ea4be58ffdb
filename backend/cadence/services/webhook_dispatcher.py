"""Signed, retrying webhook delivery.

``fire`` records one delivery log per subscribed registration and hands the
log ids to a ``DeliveryExecutor``; the HTTP work happens off the caller's
thread in its own session. Failed deliveries back off exponentially and are
picked up again by ``retry_due``.
"""

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from cadence.core.clock import Clock, SystemClock
from cadence.core.config import settings
from cadence.core.database import new_session, tenant_transaction
from cadence.core.errors import NotFoundError
from cadence.models.shared import generate_uuid
from cadence.models.webhook import Webhook, WebhookEvent
from cadence.models.webhook_log import DeliveryStatus, WebhookLog
from cadence.repositories.webhook_log_repository import WebhookLogRepository
from cadence.repositories.webhook_repository import WebhookRepository
from cadence.schemas.webhook import WebhookCreate, WebhookEnvelope, WebhookUpdate

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "v1"
MAX_RESPONSE_BODY = 1000

# Registration fields an update may set back to NULL
CLEARABLE_FIELDS = frozenset({"description", "headers"})


def serialize_body(envelope: dict[str, Any]) -> bytes:
    """Serialize a webhook envelope exactly once; these bytes are signed and sent."""
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


def generate_signature(secret: str, timestamp: int, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{body}"`` keyed by ``secret``."""
    message = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    timestamp: int | str,
    body: bytes | str,
    signature: str,
    tolerance_seconds: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Check an ``X-Webhook-Signature`` header value against a received body.

    Accepts the header with or without its ``v1=`` prefix. When
    ``tolerance_seconds`` is given, timestamps older (or newer) than that
    relative to ``now`` are rejected.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    if tolerance_seconds is not None:
        current = int((now or SystemClock().now()).timestamp())
        if abs(current - ts) > tolerance_seconds:
            return False

    if isinstance(body, str):
        body = body.encode("utf-8")
    prefix = f"{SIGNATURE_VERSION}="
    if signature.startswith(prefix):
        signature = signature[len(prefix) :]
    expected = generate_signature(secret, ts, body)
    return hmac.compare_digest(expected, signature)


def backoff_delay(attempt_count: int) -> timedelta:
    """Delay before the next retry: base minutes doubled per prior attempt."""
    return timedelta(minutes=settings.WEBHOOK_RETRY_BASE_MINUTES * 2**attempt_count)


class DeliveryExecutor(Protocol):
    """Runs delivery jobs for pending log ids without blocking the caller."""

    def submit(self, log_id: UUID) -> None: ...


_http_client: httpx.Client | None = None
_default_executor: DeliveryExecutor | None = None
_resource_lock = threading.Lock()


def get_http_client() -> httpx.Client:
    """Shared client for outbound webhook requests."""
    global _http_client
    with _resource_lock:
        if _http_client is None:
            _http_client = httpx.Client(
                headers={"User-Agent": settings.WEBHOOK_USER_AGENT},
                follow_redirects=False,
            )
        return _http_client


class ThreadPoolDeliveryExecutor:
    """Delivers each log in a worker thread with its own session."""

    def __init__(
        self,
        max_workers: int | None = None,
        client: httpx.Client | None = None,
        clock: Clock | None = None,
    ):
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.WEBHOOK_DELIVERY_WORKERS,
            thread_name_prefix="webhook-delivery",
        )
        self._client = client
        self._clock = clock

    def submit(self, log_id: UUID) -> None:
        self._pool.submit(self._run, log_id)

    def _run(self, log_id: UUID) -> None:
        db = new_session()
        try:
            WebhookDispatcher(
                db,
                clock=self._clock,
                client=self._client or get_http_client(),
                executor=self,
            ).deliver(log_id)
        except Exception:
            logger.exception("Webhook delivery job for log %s crashed", log_id)
        finally:
            db.close()

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def get_default_executor() -> DeliveryExecutor:
    global _default_executor
    with _resource_lock:
        if _default_executor is None:
            _default_executor = ThreadPoolDeliveryExecutor()
        return _default_executor


def close_delivery_resources() -> None:
    """Drain the default executor and close the shared HTTP client."""
    global _default_executor, _http_client
    with _resource_lock:
        executor, _default_executor = _default_executor, None
        client, _http_client = _http_client, None
    if isinstance(executor, ThreadPoolDeliveryExecutor):
        executor.shutdown(wait=True)
    if client is not None:
        client.close()


class WebhookDispatcher:
    """Fans billing events out to registrations and delivers them."""

    def __init__(
        self,
        db: Session,
        clock: Clock | None = None,
        client: httpx.Client | None = None,
        executor: DeliveryExecutor | None = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self._client = client
        self._executor = executor
        self.webhook_repo = WebhookRepository(db)
        self.log_repo = WebhookLogRepository(db)

    @property
    def client(self) -> httpx.Client:
        return self._client or get_http_client()

    @property
    def executor(self) -> DeliveryExecutor:
        return self._executor or get_default_executor()

    def fire(self, tenant_id: UUID, event: WebhookEvent | str, data: dict[str, Any]) -> list[UUID]:
        """Record and schedule delivery of ``event`` to every subscribed registration.

        Never raises: failures are logged and an empty (or partial) list of
        scheduled log ids is returned.

        Returns:
            Ids of the delivery logs created.
        """
        try:
            event = WebhookEvent(event)
        except ValueError:
            logger.warning("Ignoring unknown webhook event %r for tenant %s", event, tenant_id)
            return []

        try:
            created = int(self.clock.now().timestamp())
            # Round-trip through JSON so the stored payload matches what is sent
            payload_data = json.loads(json.dumps(data, default=str))
            with tenant_transaction(self.db, tenant_id):
                log_ids = []
                for webhook in self.webhook_repo.get_subscribed(tenant_id, event):
                    event_id = generate_uuid()
                    envelope = WebhookEnvelope(
                        id=str(event_id), event=event, created=created, data=payload_data
                    ).model_dump(mode="json")
                    log = self.log_repo.create(
                        webhook_id=webhook.id,
                        tenant_id=tenant_id,
                        event_type=event.value,
                        payload=envelope,
                        event_id=event_id,
                    )
                    log_ids.append(log.id)
        except Exception:
            logger.exception("Failed to record %s webhooks for tenant %s", event.value, tenant_id)
            return []

        for log_id in log_ids:
            try:
                self.executor.submit(log_id)
            except Exception:
                # The log stays pending; an operator can re-deliver it
                logger.exception("Failed to schedule webhook log %s", log_id)

        if log_ids:
            logger.info(
                "Scheduled %d %s webhook(s) for tenant %s", len(log_ids), event.value, tenant_id
            )
        return log_ids

    def deliver(self, log_id: UUID) -> bool:
        """Make one delivery attempt for a log and record the outcome.

        Returns:
            True if the receiver answered with a 2xx status.
        """
        log = self.log_repo.get_by_id(log_id)
        if not log:
            logger.error("Webhook log %s not found", log_id)
            return False

        if log.status in (DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value):
            logger.info("Webhook log %s already %s; skipping", log_id, log.status)
            return log.status == DeliveryStatus.DELIVERED.value

        webhook = self.webhook_repo.get_by_id(log.tenant_id, log.webhook_id)
        if not webhook or not webhook.is_active:
            with tenant_transaction(self.db, log.tenant_id):
                self._record_attempt(log, None, success=False, error="Webhook inactive or removed")
            return False

        now = self.clock.now()
        timestamp = int(now.timestamp())
        body = serialize_body(log.payload)
        headers = dict(webhook.headers or {})
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": settings.WEBHOOK_USER_AGENT,
                "X-Webhook-Event": str(log.event_type),
                "X-Webhook-ID": str(log.event_id),
                "X-Webhook-Timestamp": str(timestamp),
                "X-Webhook-Signature": (
                    f"{SIGNATURE_VERSION}={generate_signature(webhook.secret, timestamp, body)}"
                ),
            }
        )

        http_status: int | None = None
        response_text: str | None = None
        error: str | None = None
        started = time.monotonic()
        try:
            resp = self.client.post(
                str(webhook.url),
                content=body,
                headers=headers,
                timeout=float(webhook.timeout_seconds),
            )
            http_status = resp.status_code
            response_text = resp.text[:MAX_RESPONSE_BODY] if resp.text else None
            success = 200 <= resp.status_code < 300
            if not success:
                error = f"HTTP {resp.status_code}"
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery failed for log %s: %s", log_id, exc)
            success = False
            error = (str(exc) or exc.__class__.__name__)[:MAX_RESPONSE_BODY]
        duration_ms = int((time.monotonic() - started) * 1000)

        with tenant_transaction(self.db, log.tenant_id):
            self._record_attempt(
                log,
                webhook,
                success=success,
                http_status=http_status,
                response_text=response_text,
                error=error,
                duration_ms=duration_ms,
                now=now,
            )
        return success

    def _record_attempt(
        self,
        log: WebhookLog,
        webhook: Webhook | None,
        success: bool,
        http_status: int | None = None,
        response_text: str | None = None,
        error: str | None = None,
        duration_ms: int | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or self.clock.now()
        attempts_before = int(log.attempt_count)
        self.log_repo.create_delivery_attempt(
            webhook_log_id=log.id,
            attempt_number=attempts_before + 1,
            success=success,
            attempted_at=now,
            http_status=http_status,
            response_body=response_text,
            error_message=error,
            duration_ms=duration_ms,
        )

        log.attempt_count = attempts_before + 1
        log.last_attempt_at = now
        log.response_status = http_status
        log.response_body = response_text
        log.error_message = error

        if success:
            log.status = DeliveryStatus.DELIVERED.value
            log.delivered_at = now
            log.next_retry_at = None
        elif webhook is not None and attempts_before < int(webhook.retry_count):
            log.status = DeliveryStatus.RETRYING.value
            log.next_retry_at = now + backoff_delay(attempts_before)
        else:
            log.status = DeliveryStatus.FAILED.value
            log.next_retry_at = None
            logger.warning(
                "Webhook log %s failed permanently after %d attempt(s)", log.id, log.attempt_count
            )
        self.db.flush()

    def due_for_retry(self, limit: int | None = None) -> list[UUID]:
        rows = self.log_repo.get_due_for_retry(
            self.clock.now(), limit or settings.WEBHOOK_RETRY_BATCH_SIZE
        )
        # End the read-only transaction before delivering
        self.db.commit()
        return [log_id for _, log_id in rows]

    def retry_due(self, limit: int | None = None) -> int:
        """Re-deliver ``retrying`` logs whose backoff has elapsed.

        Returns:
            Number of logs delivered successfully.
        """
        delivered = 0
        for log_id in self.due_for_retry(limit):
            if self.deliver(log_id):
                delivered += 1
        return delivered


class WebhookRegistrationService:
    """Manages a tenant's webhook registrations."""

    def __init__(self, db: Session):
        self.db = db
        self.webhook_repo = WebhookRepository(db)
        self.log_repo = WebhookLogRepository(db)

    def register(self, tenant_id: UUID, data: WebhookCreate) -> Webhook:
        """Register a delivery target; a signing secret is generated when none is given."""
        with tenant_transaction(self.db, tenant_id):
            webhook = self.webhook_repo.create(
                tenant_id=tenant_id,
                url=data.url,
                secret=data.secret or secrets.token_hex(32),
                events=[event.value for event in data.events],
                retry_count=data.retry_count,
                timeout_seconds=data.timeout_seconds,
                description=data.description,
                headers=data.headers,
            )
        logger.info("Registered webhook %s for tenant %s", webhook.id, tenant_id)
        return webhook

    def update(self, tenant_id: UUID, webhook_id: UUID, data: WebhookUpdate) -> Webhook:
        """Apply the fields set on ``data``; an explicit None only clears nullable fields."""
        with tenant_transaction(self.db, tenant_id):
            webhook = self._get(tenant_id, webhook_id)
            fields = {
                key: value
                for key, value in data.model_dump(exclude_unset=True).items()
                if value is not None or key in CLEARABLE_FIELDS
            }
            if "events" in fields:
                fields["events"] = [WebhookEvent(event).value for event in fields["events"]]
            self.webhook_repo.update(webhook, fields)
        return webhook

    def deactivate(self, tenant_id: UUID, webhook_id: UUID) -> Webhook:
        with tenant_transaction(self.db, tenant_id):
            webhook = self._get(tenant_id, webhook_id)
            self.webhook_repo.update(webhook, {"is_active": False})
        logger.info("Deactivated webhook %s for tenant %s", webhook_id, tenant_id)
        return webhook

    def list_webhooks(self, tenant_id: UUID, active_only: bool = False) -> list[Webhook]:
        return self.webhook_repo.get_all(tenant_id, active_only=active_only)

    def get_logs(self, tenant_id: UUID, webhook_id: UUID) -> list[WebhookLog]:
        self._get(tenant_id, webhook_id)
        return self.log_repo.get_by_webhook(tenant_id, webhook_id)

    def _get(self, tenant_id: UUID, webhook_id: UUID) -> Webhook:
        webhook = self.webhook_repo.get_by_id(tenant_id, webhook_id)
        if not webhook:
            raise NotFoundError("Webhook", webhook_id)
        return webhook
