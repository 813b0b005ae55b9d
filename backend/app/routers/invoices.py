from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import require_admin
from app.core.database import get_db
from app.models.invoice import Invoice, InvoiceStatus
from app.schemas.invoice import InvoiceCreate, InvoiceResponse
from app.services.invoice_deriver import InvoiceDeriver

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post(
    "/",
    response_model=InvoiceResponse,
    status_code=201,
    summary="Create invoice",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "User, subscription or tax rate not found"},
        409: {"description": "Discount exceeds the invoice total"},
    },
)
async def create_invoice(
    data: InvoiceCreate,
    db: Session = Depends(get_db),
) -> Invoice:
    return InvoiceDeriver(db).create_invoice(data)


@router.post(
    "/from-payment/{payment_id}",
    response_model=InvoiceResponse,
    summary="Derive the invoice for a payment",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Payment not found"}},
)
async def create_invoice_from_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
) -> Invoice:
    """Idempotent: a payment has at most one invoice."""
    return InvoiceDeriver(db).create_from_payment(payment_id)


@router.get(
    "/",
    response_model=list[InvoiceResponse],
    summary="List invoices",
    responses={401: {"description": "Unauthorized"}},
)
async def list_invoices(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    user_id: UUID | None = None,
    subscription_id: UUID | None = None,
    status: InvoiceStatus | None = None,
    db: Session = Depends(get_db),
) -> list[Invoice]:
    return InvoiceDeriver(db).list_invoices(
        skip=skip, limit=limit, user_id=user_id, subscription_id=subscription_id, status=status
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Invoice not found"}},
)
async def get_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
) -> Invoice:
    return InvoiceDeriver(db).get_invoice(invoice_id)


@router.post(
    "/{invoice_id}/void",
    response_model=InvoiceResponse,
    summary="Void invoice",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is already paid or void"},
    },
)
async def void_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
) -> Invoice:
    return InvoiceDeriver(db).void_invoice(invoice_id)


@router.post(
    "/{invoice_id}/mark-paid",
    response_model=InvoiceResponse,
    summary="Mark invoice as paid",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is already paid or void"},
    },
)
async def mark_invoice_paid(
    invoice_id: UUID,
    db: Session = Depends(get_db),
) -> Invoice:
    return InvoiceDeriver(db).mark_paid(invoice_id)


@router.post(
    "/{invoice_id}/mark-uncollectible",
    response_model=InvoiceResponse,
    summary="Mark invoice as uncollectible",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not open"},
    },
)
async def mark_invoice_uncollectible(
    invoice_id: UUID,
    db: Session = Depends(get_db),
) -> Invoice:
    return InvoiceDeriver(db).mark_uncollectible(invoice_id)
