from app.models.idempotency_record import IdempotencyRecord
from app.models.invoice import Invoice, InvoiceNumberSequence, InvoiceStatus
from app.models.outbound_message import OutboundMessage
from app.models.parked_event import ParkedEvent, ParkedEventStatus
from app.models.payment import Payment, PaymentProvider, PaymentStatus
from app.models.plan import BillingInterval, Plan, SubscriptionTier
from app.models.purchase_verification import PurchaseVerification
from app.models.refund import Refund, RefundInitiator, RefundStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.tax import TaxRate
from app.models.user import User

__all__ = [
    "BillingInterval",
    "IdempotencyRecord",
    "Invoice",
    "InvoiceNumberSequence",
    "InvoiceStatus",
    "OutboundMessage",
    "ParkedEvent",
    "ParkedEventStatus",
    "Payment",
    "PaymentProvider",
    "PaymentStatus",
    "Plan",
    "PurchaseVerification",
    "Refund",
    "RefundInitiator",
    "RefundStatus",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TaxRate",
    "User",
]
