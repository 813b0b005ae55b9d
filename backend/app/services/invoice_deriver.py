"""Invoice derivation.

Invoices are derived documents: amounts are computed once when the invoice is
created and stored as-is. Changing a tax rate later never touches an issued
invoice.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import InvoiceStateError, NotFoundError
from app.models.invoice import Invoice, InvoiceStatus
from app.models.payment import Payment, PaymentStatus
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.repositories.invoice_repository import InvoiceRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.tax_repository import TaxRepository
from app.repositories.user_repository import UserRepository
from app.schemas.invoice import InvoiceCreate, InvoiceLineItem
from app.services.notification_outbox import NotificationOutbox

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Invoice statuses that can no longer be voided or paid.
CLOSED_STATUSES = frozenset({InvoiceStatus.PAID.value, InvoiceStatus.VOID.value})


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _invoice_payload(invoice: Invoice) -> dict[str, str]:
    return {
        "invoice_id": str(invoice.id),
        "invoice_number": str(invoice.invoice_number),
        "user_id": str(invoice.user_id),
        "status": str(invoice.status),
        "amount_due": str(invoice.amount_due),
        "currency": str(invoice.currency),
    }


def calculate_totals(
    line_items: list[InvoiceLineItem], tax_rate: Decimal, discount_amount: Decimal
) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(subtotal, tax_amount, amount_due)``.

    subtotal = sum(quantity * unit_price), tax = subtotal * rate,
    amount_due = subtotal + tax - discount.
    """
    subtotal = _money(sum((item.quantity * item.unit_price for item in line_items), Decimal("0")))
    tax_amount = _money(subtotal * tax_rate)
    amount_due = subtotal + tax_amount - _money(discount_amount)
    return subtotal, tax_amount, amount_due


class InvoiceDeriver:
    def __init__(self, db: Session):
        self.db = db
        self.invoice_repo = InvoiceRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.plan_repo = PlanRepository(db)
        self.tax_repo = TaxRepository(db)
        self.user_repo = UserRepository(db)
        self.outbox = NotificationOutbox(db)

    def _resolve_tax_rate(self, tax_rate: Decimal | None, country_code: str | None) -> Decimal:
        if tax_rate is not None:
            return tax_rate
        if country_code:
            configured = self.tax_repo.get_by_country(country_code)
            if configured is None:
                raise NotFoundError(
                    f"No tax rate configured for {country_code}", country_code=country_code
                )
            return Decimal(str(configured.rate))
        return settings.default_tax_rate

    def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """Create an invoice from explicit line items."""
        if self.user_repo.get_by_id(data.user_id) is None:
            raise NotFoundError(f"User {data.user_id} not found", user_id=str(data.user_id))
        if data.subscription_id and not self.subscription_repo.get_by_id(data.subscription_id):
            raise NotFoundError(
                f"Subscription {data.subscription_id} not found",
                subscription_id=str(data.subscription_id),
            )

        rate = self._resolve_tax_rate(data.tax_rate, data.country_code)
        subtotal, tax_amount, amount_due = calculate_totals(
            data.line_items, rate, data.discount_amount
        )
        if amount_due < 0:
            raise InvoiceStateError(
                "Discount exceeds the invoice total",
                discount_amount=str(data.discount_amount),
            )

        invoice = self.invoice_repo.create(
            user_id=data.user_id,
            subscription_id=data.subscription_id,
            currency=data.currency,
            line_items=[self._line_item_json(item) for item in data.line_items],
            subtotal=subtotal,
            tax_rate=rate,
            tax_amount=tax_amount,
            discount_amount=_money(data.discount_amount),
            amount_due=amount_due,
            status=InvoiceStatus.OPEN if data.issue else InvoiceStatus.DRAFT,
            billing_period_start=data.billing_period_start,
            billing_period_end=data.billing_period_end,
        )
        self.outbox.enqueue("invoice.created", "invoice", invoice.id, _invoice_payload(invoice))  # type: ignore[arg-type]
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def create_from_payment(self, payment_id: UUID) -> Invoice:
        """Derive the invoice for a payment; calling it again returns the same invoice."""
        payment = self.payment_repo.get_by_id(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))
        invoice = self.derive_from_payment(payment)
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def derive_from_payment(
        self,
        payment: Payment,
        subscription: Subscription | None = None,
        plan: Plan | None = None,
    ) -> Invoice:
        """Derive a payment's invoice inside the caller's transaction."""
        existing = self.invoice_repo.get_by_payment_id(payment.id)  # type: ignore[arg-type]
        if existing is not None:
            return existing

        if subscription is None and payment.subscription_id is not None:
            subscription = self.subscription_repo.get_by_id(payment.subscription_id)  # type: ignore[arg-type]
        if plan is None and subscription is not None:
            plan = self.plan_repo.get_by_id(subscription.plan_id)  # type: ignore[arg-type]

        if plan is not None and subscription is not None:
            description = f"{plan.name} ({subscription.interval})"
        else:
            description = f"Payment {payment.provider_payment_id or payment.id}"

        # The amount paid includes tax, so the tax is backed out of it.
        amount_due = _money(Decimal(str(payment.amount)))
        rate = settings.default_tax_rate
        subtotal = _money(amount_due / (1 + rate))
        tax_amount = amount_due - subtotal
        item = InvoiceLineItem(description=description, unit_price=subtotal)
        paid = payment.status != PaymentStatus.FAILED.value

        invoice = self.invoice_repo.create(
            user_id=payment.user_id,  # type: ignore[arg-type]
            payment_id=payment.id,  # type: ignore[arg-type]
            subscription_id=subscription.id if subscription else None,  # type: ignore[arg-type]
            currency=str(payment.currency),
            line_items=[self._line_item_json(item)],
            subtotal=subtotal,
            tax_rate=rate,
            tax_amount=tax_amount,
            discount_amount=Decimal("0"),
            amount_due=amount_due,
            status=InvoiceStatus.PAID if paid else InvoiceStatus.OPEN,
            billing_period_start=subscription.current_period_start if subscription else None,  # type: ignore[arg-type]
            billing_period_end=subscription.current_period_end if subscription else None,  # type: ignore[arg-type]
        )
        self.outbox.enqueue("invoice.created", "invoice", invoice.id, _invoice_payload(invoice))  # type: ignore[arg-type]
        logger.info("Derived invoice %s for payment %s", invoice.invoice_number, payment.id)
        return invoice

    def void_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self._get_for_update(invoice_id)
        if invoice.status in CLOSED_STATUSES:
            raise InvoiceStateError(
                f"Cannot void an invoice in status {invoice.status}",
                invoice_id=str(invoice_id),
                status=str(invoice.status),
            )
        self.invoice_repo.set_status(invoice, InvoiceStatus.VOID)
        self.outbox.enqueue("invoice.voided", "invoice", invoice.id, _invoice_payload(invoice))  # type: ignore[arg-type]
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def mark_paid(self, invoice_id: UUID) -> Invoice:
        invoice = self._get_for_update(invoice_id)
        if invoice.status in CLOSED_STATUSES:
            raise InvoiceStateError(
                f"Cannot mark an invoice in status {invoice.status} as paid",
                invoice_id=str(invoice_id),
                status=str(invoice.status),
            )
        self.invoice_repo.set_status(invoice, InvoiceStatus.PAID)
        self.outbox.enqueue("invoice.paid", "invoice", invoice.id, _invoice_payload(invoice))  # type: ignore[arg-type]
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def mark_uncollectible(self, invoice_id: UUID) -> Invoice:
        """Write off an OPEN invoice; it can still be paid or voided later."""
        invoice = self._get_for_update(invoice_id)
        if invoice.status != InvoiceStatus.OPEN.value:
            raise InvoiceStateError(
                f"Cannot mark an invoice in status {invoice.status} as uncollectible",
                invoice_id=str(invoice_id),
                status=str(invoice.status),
            )
        self.invoice_repo.set_status(invoice, InvoiceStatus.UNCOLLECTIBLE)
        self.outbox.enqueue(
            "invoice.uncollectible", "invoice", invoice.id, _invoice_payload(invoice)  # type: ignore[arg-type]
        )
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.invoice_repo.get_by_id(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=str(invoice_id))
        return invoice

    def list_invoices(
        self,
        skip: int = 0,
        limit: int = 100,
        user_id: UUID | None = None,
        subscription_id: UUID | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        return self.invoice_repo.get_all(
            skip=skip, limit=limit, user_id=user_id, subscription_id=subscription_id, status=status
        )

    def _get_for_update(self, invoice_id: UUID) -> Invoice:
        invoice = self.invoice_repo.get_by_id(invoice_id, for_update=True)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=str(invoice_id))
        return invoice

    @staticmethod
    def _line_item_json(item: InvoiceLineItem) -> dict[str, Any]:
        return {
            "description": item.description,
            "quantity": str(item.quantity),
            "unit_price": str(item.unit_price),
            "amount": str(_money(item.quantity * item.unit_price)),
        }
