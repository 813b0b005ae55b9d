from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.routers.webhooks import get_apple_provider, get_google_provider
from app.schemas.purchase import (
    ApplePurchaseRequest,
    AppleRestoreRequest,
    GooglePurchaseRequest,
    PurchaseVerificationResult,
)
from app.services.payment_providers.apple import AppleProvider
from app.services.payment_providers.google import GoogleProvider
from app.services.purchase_verification import PurchaseVerificationService

router = APIRouter()


@router.post(
    "/apple",
    response_model=PurchaseVerificationResult,
    summary="Verify an App Store receipt",
    responses={503: {"description": "App Store unavailable"}},
)
def verify_apple_purchase(
    data: ApplePurchaseRequest,
    apple: AppleProvider = Depends(get_apple_provider),
    db: Session = Depends(get_db),
) -> PurchaseVerificationResult:
    return PurchaseVerificationService(db, apple=apple).verify_apple(data)


@router.post(
    "/apple/restore",
    response_model=PurchaseVerificationResult,
    summary="Restore App Store purchases",
    responses={503: {"description": "App Store unavailable"}},
)
def restore_apple_purchases(
    data: AppleRestoreRequest,
    apple: AppleProvider = Depends(get_apple_provider),
    db: Session = Depends(get_db),
) -> PurchaseVerificationResult:
    """Re-link the latest subscription in a receipt to the requesting user."""
    return PurchaseVerificationService(db, apple=apple).restore_apple(data)


@router.post(
    "/google",
    response_model=PurchaseVerificationResult,
    summary="Verify a Google Play purchase token",
    responses={503: {"description": "Google Play unavailable"}},
)
def verify_google_purchase(
    data: GooglePurchaseRequest,
    google: GoogleProvider = Depends(get_google_provider),
    db: Session = Depends(get_db),
) -> PurchaseVerificationResult:
    return PurchaseVerificationService(db, google=google).verify_google(data)
