from shipping_bridge.schemas.shipping import (
    Address,
    Parcel,
    RateRequestBody,
    ShipmentCreateBody,
    CreateFromOrderBody,
    WebhookPayload,
    ShipmentRecord,
    TrackingView,
)
