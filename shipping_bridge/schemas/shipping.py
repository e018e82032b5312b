"""
Shipping Schemas

Pydantic models for shipping API requests and responses, plus the
ShipmentRecord stored on orders. The storefront sends a mix of snake_case
and camelCase keys, so request models accept both spellings.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel


# ==================== Request Schemas ====================


class Address(BaseModel):
    """Origin or destination address as sent by the storefront."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = Field(
        None, validation_alias=AliasChoices("address1", "address", "street1")
    )
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(
        None, validation_alias=AliasChoices("postal_code", "postalCode", "zipCode")
    )
    country: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class Parcel(BaseModel):
    """One parcel line; missing values take the package defaults."""
    weight: Optional[float] = None
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    quantity: Optional[int] = None

    @field_validator("weight", "length", "width", "height", "quantity", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v == "":
            return None
        return v


class RateRequestBody(BaseModel):
    """POST /rates"""
    model_config = ConfigDict(populate_by_name=True)

    origin: Optional[Address] = None
    destination: Optional[Address] = None
    parcels: Optional[List[Parcel]] = None
    service_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("serviceType", "service_type", "service_code")
    )


class ShipmentCreateBody(BaseModel):
    """POST /create"""
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[int] = Field(None, validation_alias=AliasChoices("orderId", "order_id"))
    service: Optional[str] = None
    origin: Optional[Address] = None
    destination: Optional[Address] = None
    parcels: Optional[List[Parcel]] = None
    reference: Optional[str] = None
    force_retry: bool = Field(False, validation_alias=AliasChoices("forceRetry", "force_retry"))


class CreateFromOrderBody(BaseModel):
    """POST /orders/{order_id}/shipment"""
    force_retry: bool = Field(False, validation_alias=AliasChoices("forceRetry", "force_retry"))


class WebhookPayload(BaseModel):
    """Carrier webhook envelope: {event, data}."""
    model_config = ConfigDict(extra="ignore")

    event: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or {}


# ==================== Shipment Record ====================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ShipmentRecord(BaseModel):
    """
    Shipment state embedded in orders.shipment.

    Serialized with camelCase keys (shipmentId, trackingId, ...) both in
    storage and in API responses. status is free-form: the well-known values
    are created, in_transit, delivered, failed and cancelled, anything else
    the carrier reports is kept as-is.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    provider: str = "Stallion Express"
    service: Optional[str] = None
    shipment_id: Optional[str] = None
    tracking_id: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    status: str = "created"
    cost: Optional[Decimal] = None
    currency: str = "CAD"
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    raw_response: Optional[Any] = None

    @classmethod
    def from_stored(cls, data: Optional[Dict[str, Any]]) -> Optional["ShipmentRecord"]:
        """Load the JSON stored on an order; None when the order has no shipment."""
        if not data:
            return None
        return cls.model_validate(data)

    def to_stored(self) -> Dict[str, Any]:
        """JSON-safe camelCase dict for orders.shipment and API responses."""
        return self.model_dump(mode="json", by_alias=True)


class TrackingView(BaseModel):
    """Tracking state returned by GET /orders/{order_id}/tracking."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    status: Optional[str] = None
    provider: Optional[str] = None
    last_updated: Optional[datetime] = None
    events: List[Any] = Field(default_factory=list)
    source: Literal["live", "cached"] = "live"

    @classmethod
    def from_record(cls, record: ShipmentRecord, source: str, events: Optional[List[Any]] = None) -> "TrackingView":
        return cls(
            shipment_id=record.shipment_id,
            tracking_number=record.tracking_id,
            tracking_url=record.tracking_url,
            status=record.status,
            provider=record.provider,
            last_updated=record.last_updated,
            events=events or [],
            source=source,
        )

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"source"})
