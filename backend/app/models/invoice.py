from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class Invoice(Base):
    """Append-only billing document; amounts are frozen at creation."""

    __tablename__ = "invoices"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    invoice_number = Column(String(50), unique=True, index=True, nullable=False)
    user_id = Column(
        UUIDType, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    payment_id = Column(
        UUIDType, ForeignKey("payments.id", ondelete="RESTRICT"), nullable=True, unique=True
    )
    subscription_id = Column(
        UUIDType, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value)

    # Amounts (stored as Decimal with 4 decimal places for precision)
    currency = Column(String(3), nullable=False, default="USD")
    subtotal = Column(Numeric(12, 4), nullable=False, default=0)
    tax_rate = Column(Numeric(7, 4), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 4), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 4), nullable=False, default=0)
    amount_due = Column(Numeric(12, 4), nullable=False, default=0)

    # Line items stored as JSON array
    line_items = Column(JSON, nullable=False, default=list)

    # Billing period
    billing_period_start = Column(DateTime(timezone=True), nullable=True)
    billing_period_end = Column(DateTime(timezone=True), nullable=True)

    # Dates
    issued_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class InvoiceNumberSequence(Base):
    """Monotonic counter per month; numbers are never handed out twice."""

    __tablename__ = "invoice_number_sequences"

    period = Column(String(6), primary_key=True)  # YYYYMM
    last_value = Column(Integer, nullable=False, default=0)
