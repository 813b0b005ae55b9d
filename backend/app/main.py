import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import InvariantViolationError, ReconciliationError, http_status_for
from app.routers import (
    admin,
    invoices,
    payments,
    plans,
    purchases,
    subscriptions,
    users,
    webhooks,
)

logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Signed provider notifications from Stripe, Apple and Google."},
    {"name": "Purchases", "description": "Synchronous verification of in-app purchases."},
    {"name": "Users", "description": "Effective tier and subscription history per user."},
    {"name": "Subscriptions", "description": "Read subscription state."},
    {"name": "Plans", "description": "Plan catalog and provider product mappings."},
    {"name": "Payments", "description": "Payments and refunds."},
    {"name": "Invoices", "description": "Derived invoices and their lifecycle."},
    {"name": "Admin", "description": "Manual grants, parked events and tax rates."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Subscription reconciliation service. "
        "Turns Stripe, App Store and Google Play notifications into one "
        "subscription state per user, with refunds, invoices and tier lookup."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    if isinstance(exc, InvariantViolationError):
        logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=http_status_for(exc), content={"detail": exc.to_dict()})


app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(purchases.router, prefix="/v1/purchases", tags=["Purchases"])
app.include_router(users.router, prefix="/v1/users", tags=["Users"])
app.include_router(subscriptions.router, prefix="/v1/subscriptions", tags=["Subscriptions"])
app.include_router(plans.router, prefix="/v1/plans", tags=["Plans"])
app.include_router(payments.router, prefix="/v1/payments", tags=["Payments"])
app.include_router(invoices.router, prefix="/v1/invoices", tags=["Invoices"])
app.include_router(admin.router, prefix="/v1/admin", tags=["Admin"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "status": "running",
    }
