"""Google Play payload shapes: Pub/Sub push envelope, RTDN, subscription purchase."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _GoogleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PubSubMessage(_GoogleModel):
    data: str
    message_id: str
    publish_time: str | None = None


class PubSubPushEnvelope(_GoogleModel):
    message: PubSubMessage
    subscription: str | None = None


class SubscriptionNotification(_GoogleModel):
    version: str | None = None
    notification_type: int
    purchase_token: str
    subscription_id: str


class DeveloperNotification(_GoogleModel):
    version: str | None = None
    package_name: str
    event_time_millis: str
    subscription_notification: SubscriptionNotification | None = None
    test_notification: dict[str, str] | None = None


class GoogleSubscriptionPurchase(_GoogleModel):
    """``purchases.subscriptions.get`` response."""

    order_id: str | None = None
    start_time_millis: str | None = None
    expiry_time_millis: str | None = None
    auto_renewing: bool | None = None
    price_currency_code: str | None = None
    price_amount_micros: str | None = None
    payment_state: int | None = None
    cancel_reason: int | None = None
    acknowledgement_state: int | None = None
    obfuscated_external_account_id: str | None = None
    linked_purchase_token: str | None = None
