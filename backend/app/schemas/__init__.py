from app.schemas.invoice import InvoiceCreate, InvoiceLineItem, InvoiceResponse
from app.schemas.parked_event import ParkedEventResponse
from app.schemas.payment import PaymentResponse, RefundCreate, RefundResponse
from app.schemas.plan import PlanCreate, PlanResponse, PlanUpdate
from app.schemas.provider_event import EventType, ProviderEvent, ProviderRefund
from app.schemas.purchase import (
    ApplePurchaseRequest,
    AppleRestoreRequest,
    GooglePurchaseRequest,
    PurchaseVerificationResult,
)
from app.schemas.subscription import (
    ApplyResultResponse,
    ExtendSubscriptionRequest,
    GrantSubscriptionRequest,
    RevokeSubscriptionRequest,
    SubscriptionResponse,
)
from app.schemas.tier import EffectiveTier

__all__ = [
    "ApplePurchaseRequest",
    "AppleRestoreRequest",
    "ApplyResultResponse",
    "EffectiveTier",
    "EventType",
    "ExtendSubscriptionRequest",
    "GooglePurchaseRequest",
    "GrantSubscriptionRequest",
    "InvoiceCreate",
    "InvoiceLineItem",
    "InvoiceResponse",
    "ParkedEventResponse",
    "PaymentResponse",
    "PlanCreate",
    "PlanResponse",
    "PlanUpdate",
    "ProviderEvent",
    "ProviderRefund",
    "PurchaseVerificationResult",
    "RefundCreate",
    "RefundResponse",
    "RevokeSubscriptionRequest",
    "SubscriptionResponse",
]
