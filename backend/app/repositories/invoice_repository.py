from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.invoice import Invoice, InvoiceNumberSequence, InvoiceStatus


class InvoiceRepository:
    def __init__(self, db: Session):
        self.db = db

    def _generate_invoice_number(self, now: datetime | None = None) -> str:
        """Allocate the next invoice number, INV-YYYYMM-NNNNNN.

        Numbers come from a per-month counter row that only ever moves forward,
        so a voided invoice's number is never handed out again.
        """
        period = (now or datetime.now(UTC)).strftime("%Y%m")
        sequence = (
            self.db.query(InvoiceNumberSequence)
            .filter(InvoiceNumberSequence.period == period)
            .with_for_update()
            .first()
        )
        if sequence is None:
            sequence = InvoiceNumberSequence(period=period, last_value=0)
            self.db.add(sequence)
        sequence.last_value = int(sequence.last_value or 0) + 1
        self.db.flush()
        return f"INV-{period}-{int(sequence.last_value):06d}"

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        user_id: UUID | None = None,
        subscription_id: UUID | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        query = self.db.query(Invoice)
        if user_id:
            query = query.filter(Invoice.user_id == user_id)
        if subscription_id:
            query = query.filter(Invoice.subscription_id == subscription_id)
        if status:
            query = query.filter(Invoice.status == status.value)
        return query.order_by(Invoice.created_at.desc()).offset(skip).limit(limit).all()

    def get_by_id(self, invoice_id: UUID, for_update: bool = False) -> Invoice | None:
        query = self.db.query(Invoice).filter(Invoice.id == invoice_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_by_payment_id(self, payment_id: UUID) -> Invoice | None:
        return self.db.query(Invoice).filter(Invoice.payment_id == payment_id).first()

    def create(
        self,
        *,
        user_id: UUID,
        currency: str,
        line_items: list[dict[str, Any]],
        subtotal: Decimal,
        tax_rate: Decimal,
        tax_amount: Decimal,
        discount_amount: Decimal,
        amount_due: Decimal,
        status: InvoiceStatus,
        payment_id: UUID | None = None,
        subscription_id: UUID | None = None,
        billing_period_start: datetime | None = None,
        billing_period_end: datetime | None = None,
    ) -> Invoice:
        now = datetime.now(UTC)
        invoice = Invoice(
            invoice_number=self._generate_invoice_number(now),
            user_id=user_id,
            payment_id=payment_id,
            subscription_id=subscription_id,
            status=status.value,
            currency=currency.upper(),
            line_items=line_items,
            subtotal=subtotal,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            amount_due=amount_due,
            billing_period_start=billing_period_start,
            billing_period_end=billing_period_end,
            issued_at=None if status == InvoiceStatus.DRAFT else now,
            paid_at=now if status == InvoiceStatus.PAID else None,
        )
        self.db.add(invoice)
        self.db.flush()
        return invoice

    def set_status(self, invoice: Invoice, status: InvoiceStatus) -> Invoice:
        now = datetime.now(UTC)
        invoice.status = status.value  # type: ignore[assignment]
        if status == InvoiceStatus.OPEN and invoice.issued_at is None:
            invoice.issued_at = now  # type: ignore[assignment]
        elif status == InvoiceStatus.PAID:
            invoice.paid_at = now  # type: ignore[assignment]
        elif status == InvoiceStatus.VOID:
            invoice.voided_at = now  # type: ignore[assignment]
        self.db.flush()
        return invoice
