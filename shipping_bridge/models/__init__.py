from shipping_bridge.models.order import Order
from shipping_bridge.models.carrier_settings import CarrierSettings
from shipping_bridge.models.webhook_failure import WebhookFailure, WebhookFailureStatus

__all__ = [
    "Order",
    "CarrierSettings",
    "WebhookFailure",
    "WebhookFailureStatus",
]
