from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.invoice import InvoiceStatus


class InvoiceLineItem(BaseModel):
    description: str = Field(min_length=1, max_length=500)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(ge=0)


class InvoiceCreate(BaseModel):
    user_id: UUID
    subscription_id: UUID | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    line_items: list[InvoiceLineItem] = Field(min_length=1)
    tax_rate: Decimal | None = Field(default=None, ge=0, le=1)
    country_code: str | None = Field(default=None, min_length=2, max_length=2)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    billing_period_start: datetime | None = None
    billing_period_end: datetime | None = None
    issue: bool = True


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    user_id: UUID
    payment_id: UUID | None
    subscription_id: UUID | None
    status: InvoiceStatus
    currency: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    amount_due: Decimal
    line_items: list[dict[str, Any]]
    billing_period_start: datetime | None
    billing_period_end: datetime | None
    issued_at: datetime | None
    paid_at: datetime | None
    voided_at: datetime | None
    created_at: datetime
