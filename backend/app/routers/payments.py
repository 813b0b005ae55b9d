from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth import require_admin
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.models.payment import Payment
from app.models.refund import Refund
from app.repositories.payment_repository import PaymentRepository
from app.schemas.payment import PaymentResponse, RefundCreate, RefundResponse
from app.services.refund_ledger import RefundLedger

router = APIRouter()


def get_refund_ledger(db: Session = Depends(get_db)) -> RefundLedger:
    return RefundLedger(db)


@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Payment not found"}},
)
async def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
) -> Payment:
    payment = PaymentRepository(db).get_by_id(payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))
    return payment


@router.post(
    "/{payment_id}/refunds",
    response_model=RefundResponse,
    status_code=201,
    summary="Refund a payment",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Payment not found"},
        409: {"description": "Payment already refunded or not refundable"},
        503: {"description": "Payment provider unavailable"},
    },
)
def create_refund(
    payment_id: UUID,
    data: RefundCreate,
    ledger: RefundLedger = Depends(get_refund_ledger),
    admin_id: str = Depends(require_admin),
) -> Refund:
    """Refund part or all of a payment.

    The amount is clamped to what remains refundable; omit it to refund the rest.
    """
    return ledger.create_refund(
        payment_id, amount=data.amount, reason=data.reason, initiated_by=data.initiated_by
    )


@router.get(
    "/{payment_id}/refunds",
    response_model=list[RefundResponse],
    summary="List refunds for a payment",
    responses={401: {"description": "Unauthorized"}, 404: {"description": "Payment not found"}},
)
async def list_refunds(
    payment_id: UUID,
    ledger: RefundLedger = Depends(get_refund_ledger),
    admin_id: str = Depends(require_admin),
) -> list[Refund]:
    return ledger.list_refunds(payment_id)
