from cadence.models.customer import Customer, CustomerStatus
from cadence.models.invoice import PAYABLE_STATUSES, Invoice, InvoiceStatus
from cadence.models.invoice_item import InvoiceItem
from cadence.models.invoice_tax import InvoiceTax, TaxType
from cadence.models.payment import Payment, PaymentMethod, PaymentStatus
from cadence.models.plan import BillingCycle, Plan
from cadence.models.subscription import Subscription, SubscriptionStatus
from cadence.models.subscription_history import SubscriptionEventType, SubscriptionHistory
from cadence.models.tenant import Tenant
from cadence.models.webhook import Webhook, WebhookEvent
from cadence.models.webhook_delivery_attempt import WebhookDeliveryAttempt
from cadence.models.webhook_log import DeliveryStatus, WebhookLog

__all__ = [
    "BillingCycle",
    "Customer",
    "CustomerStatus",
    "DeliveryStatus",
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "InvoiceTax",
    "PAYABLE_STATUSES",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Plan",
    "Subscription",
    "SubscriptionEventType",
    "SubscriptionHistory",
    "SubscriptionStatus",
    "TaxType",
    "Tenant",
    "Webhook",
    "WebhookDeliveryAttempt",
    "WebhookEvent",
    "WebhookLog",
]
