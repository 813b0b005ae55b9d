from app.repositories.idempotency_repository import IdempotencyRepository
from app.repositories.invoice_repository import InvoiceRepository
from app.repositories.outbound_message_repository import OutboundMessageRepository
from app.repositories.parked_event_repository import ParkedEventRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.purchase_verification_repository import PurchaseVerificationRepository
from app.repositories.refund_repository import RefundRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.tax_repository import TaxRepository
from app.repositories.user_repository import UserRepository

__all__ = [
    "IdempotencyRepository",
    "InvoiceRepository",
    "OutboundMessageRepository",
    "ParkedEventRepository",
    "PaymentRepository",
    "PlanRepository",
    "PurchaseVerificationRepository",
    "RefundRepository",
    "SubscriptionRepository",
    "TaxRepository",
    "UserRepository",
]
