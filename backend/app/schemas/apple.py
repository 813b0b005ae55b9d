"""Apple App Store payload shapes.

Only the fields reconciliation reads are declared; everything else Apple sends
is dropped at parse time (``extra="ignore"``).
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _AppleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# verifyReceipt (legacy receipt validation)


class AppleReceiptTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    original_transaction_id: str
    transaction_id: str
    product_id: str
    purchase_date_ms: str | None = None
    expires_date_ms: str | None = None
    is_trial_period: str = "false"
    cancellation_date_ms: str | None = None


class AppleReceiptResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: int
    environment: str | None = None
    latest_receipt_info: list[AppleReceiptTransaction] = Field(default_factory=list)
    is_retryable: bool | None = Field(default=None, alias="is-retryable")


# App Store Server Notifications V2


class AppleNotificationData(_AppleModel):
    bundle_id: str | None = None
    environment: str | None = None
    signed_transaction_info: str | None = None
    signed_renewal_info: str | None = None


class AppleNotificationPayload(_AppleModel):
    notification_type: str
    subtype: str | None = None
    notification_uuid: str = Field(alias="notificationUUID")
    data: AppleNotificationData | None = None
    signed_date: int | None = None


class AppleTransactionInfo(_AppleModel):
    transaction_id: str
    original_transaction_id: str
    product_id: str
    bundle_id: str | None = None
    purchase_date: int | None = None
    expires_date: int | None = None
    price: int | None = None  # milli-units of the currency
    currency: str | None = None
    app_account_token: str | None = None
    offer_type: int | None = None
    offer_discount_type: str | None = None
    revocation_date: int | None = None


class AppleRenewalInfo(_AppleModel):
    original_transaction_id: str | None = None
    auto_renew_status: int | None = None
    auto_renew_product_id: str | None = None
    grace_period_expires_date: int | None = None
    renewal_date: int | None = None


class AppleWebhookBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    signed_payload: str = Field(alias="signedPayload", min_length=1)
