"""Stripe webhook payload shapes for the events reconciliation consumes."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripeEventData(_StripeModel):
    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class StripeEventEnvelope(_StripeModel):
    id: str
    type: str
    created: int
    data: StripeEventData


class StripePrice(_StripeModel):
    id: str


class StripeSubscriptionItem(_StripeModel):
    price: StripePrice
    current_period_start: int | None = None
    current_period_end: int | None = None


class StripeList(_StripeModel):
    data: list[dict[str, Any]] = Field(default_factory=list)


class StripeCheckoutSession(_StripeModel):
    id: str
    subscription: str | None = None
    customer: str | None = None
    client_reference_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class StripeSubscription(_StripeModel):
    id: str
    customer: str | None = None
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    trial_end: int | None = None
    items: StripeList = Field(default_factory=StripeList)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def first_item(self) -> StripeSubscriptionItem | None:
        if not self.items.data:
            return None
        return StripeSubscriptionItem.model_validate(self.items.data[0])


class StripeInvoiceLinePeriod(_StripeModel):
    start: int
    end: int


class StripeInvoiceLine(_StripeModel):
    period: StripeInvoiceLinePeriod | None = None
    price: StripePrice | None = None


class StripeInvoice(_StripeModel):
    id: str
    subscription: str | None = None
    customer: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    payment_intent: str | None = None
    charge: str | None = None
    billing_reason: str | None = None
    lines: StripeList = Field(default_factory=StripeList)
    subscription_details: dict[str, Any] | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def first_line(self) -> StripeInvoiceLine | None:
        if not self.lines.data:
            return None
        return StripeInvoiceLine.model_validate(self.lines.data[0])


class StripeRefundObject(_StripeModel):
    id: str
    amount: int
    status: str = "succeeded"


class StripeCharge(_StripeModel):
    id: str
    payment_intent: str | None = None
    amount: int = 0
    amount_refunded: int = 0
    currency: str = "usd"
    refunds: StripeList = Field(default_factory=StripeList)


class StripeDispute(_StripeModel):
    id: str
    charge: str | None = None
    payment_intent: str | None = None
    amount: int = 0
    reason: str | None = None
