"""
Shipping Service

Orchestrates Stallion Express operations against stored orders:
- Rate quotes
- Shipment creation (idempotent per order)
- Cancellation
- Tracking refresh

Idempotency: orders.shipment_id is the marker. Creation first claims it with
a pending reservation token (a conditional UPDATE), then calls the carrier,
then swaps the token for the real shipment id. If the carrier call fails the
reservation is released and the order is left as it was. If the request is
cancelled mid-call the reservation stays; forceRetry clears it.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_bridge.core.config import Settings, settings as default_settings
from shipping_bridge.core.exceptions import (
    CarrierError,
    CarrierRemoteError,
    OrderNotFoundError,
    ShipmentInProgressError,
    ShipmentNotFoundError,
    ShippingValidationError,
)
from shipping_bridge.schemas.shipping import (
    Address,
    Parcel,
    RateRequestBody,
    ShipmentCreateBody,
    ShipmentRecord,
    TrackingView,
    utc_now,
)
from shipping_bridge.services.order_store import OrderRepository
from shipping_bridge.services.stallion_client import CarrierRate, StallionClient

logger = logging.getLogger(__name__)

RESERVATION_PREFIX = "pending:"

# Carrier shipment status -> order status. Other statuses leave the order alone.
ORDER_STATUS_BY_SHIPMENT_STATUS = {
    "delivered": "Delivered",
    "in_transit": "Shipped",
}

# Carrier field length limits
MAX_NAME = 40
MAX_ADDRESS = 50
MAX_CITY = 35
MAX_PROVINCE = 2
MAX_POSTAL = 10
MAX_COUNTRY = 2

DEFAULT_PROVINCE = "ON"


def is_reservation(shipment_id: Optional[str]) -> bool:
    return bool(shipment_id) and shipment_id.startswith(RESERVATION_PREFIX)


def strip_whitespace(value: Optional[str]) -> str:
    return re.sub(r"\s", "", value or "")


@dataclass
class ShipmentOutcome:
    """Result of create_shipment. created is False when an existing shipment was returned."""
    record: ShipmentRecord
    created: bool
    order_id: int
    invoice: Optional[str] = None
    order_status: Optional[str] = None

    def order_summary(self) -> Dict[str, Any]:
        return {"id": self.order_id, "invoice": self.invoice, "status": self.order_status}


async def apply_status_update(orders: OrderRepository, order, status: str) -> ShipmentRecord:
    """
    Overwrite the shipment status on an order and project it onto the order.

    Shared by tracking refresh callers and the webhook ingestor.
    """
    record = ShipmentRecord.from_stored(order.shipment) or ShipmentRecord(shipment_id=order.shipment_id)
    record.status = status
    record.last_updated = utc_now()

    order_status = ORDER_STATUS_BY_SHIPMENT_STATUS.get(status)
    await orders.update_shipment(order.id, record, order_status=order_status)

    logger.info(
        f"[Shipping] Order {order.id} shipment status -> {status}"
        + (f", order status -> {order_status}" if order_status else "")
    )
    return record


class ShippingService:
    """
    Shipping operations for one request.

    Usage:
        service = ShippingService(db, client)
        outcome = await service.create_shipment(order_id, None)
    """

    def __init__(
        self,
        db: Optional[AsyncSession],
        client: StallionClient,
        config: Settings = default_settings,
        orders: Optional[OrderRepository] = None,
    ):
        self.client = client
        self.settings = config
        self.orders = orders or OrderRepository(db)

    # ==================== Rates ====================

    async def quote(self, request: RateRequestBody) -> List[CarrierRate]:
        if not request.destination or not request.parcels:
            raise ShippingValidationError("Destination address and parcels are required")

        destination = request.destination
        origin = request.origin or self.warehouse_address()

        payload = {
            "from_address": {
                "name": origin.name,
                "street1": origin.address1,
                "city": origin.city,
                "province_code": origin.province or origin.state,
                "postal_code": strip_whitespace(origin.postal_code),
                "country_code": origin.country,
                "phone": origin.phone or "",
                "email": origin.email or "",
            },
            "to_address": {
                "name": destination.name or "Customer",
                "street1": destination.address1,
                "city": destination.city,
                "province_code": destination.province or destination.state or DEFAULT_PROVINCE,
                "postal_code": strip_whitespace(destination.postal_code),
                "country_code": destination.country,
            },
            **self.package_from_parcels(request.parcels),
            "package_contents": "merchandise",
            "value": self.settings.DEFAULT_DECLARED_VALUE,
            "currency": self.settings.STALLION_DEFAULT_CURRENCY,
        }
        if request.service_type:
            payload["service_code"] = request.service_type

        rates = await self.client.get_rates(payload)
        logger.info(f"[Shipping] Quoted {len(rates)} rates to {destination.country}")
        return rates

    # ==================== Create ====================

    async def create_shipment(
        self,
        order_id: int,
        params: Optional[ShipmentCreateBody] = None,
        force_retry: bool = False,
    ) -> ShipmentOutcome:
        """
        Create a carrier shipment for an order.

        params carries explicit service/destination/parcels; None derives
        everything from the stored order.
        """
        if params is not None and not (params.service and params.destination and params.parcels):
            raise ShippingValidationError("Order ID, service, destination, and parcels are required")

        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        current = order.shipment_id
        if current and not force_retry:
            return self._existing_outcome(order)

        # Built before reserving so a malformed order never leaves a reservation behind
        if params is not None:
            payload = self.payload_from_params(order, params)
            service = params.service
        else:
            payload = self.payload_from_order(order)
            service = self.settings.STALLION_DEFAULT_POSTAGE_TYPE

        token = f"{RESERVATION_PREFIX}{uuid.uuid4().hex}"
        if not await self.orders.reserve_shipment(order.id, token, expected=current):
            logger.info(f"[Shipping] Lost shipment reservation race on order {order.id}")
            winner = await self.orders.get(order_id)
            if winner is None:
                raise OrderNotFoundError(order_id)
            if not winner.shipment_id:
                raise ShipmentInProgressError(
                    "Shipment state changed during creation, try again",
                    details={"order_id": order_id},
                )
            return self._existing_outcome(winner)

        try:
            shipment = await self.client.create_shipment(payload)
            if not shipment.shipment_id:
                raise CarrierRemoteError(
                    "Stallion Express did not return a shipment id",
                    details={"remote": shipment.raw_response},
                )
        except Exception:
            await self.orders.release_shipment(order.id, token, previous=current)
            raise

        now = utc_now()
        record = ShipmentRecord(
            provider=self.settings.STALLION_PROVIDER_NAME,
            service=service,
            shipment_id=shipment.shipment_id,
            tracking_id=shipment.tracking_number,
            tracking_url=shipment.tracking_url,
            label_url=shipment.label_url,
            status=shipment.status or "created",
            cost=shipment.cost if shipment.cost is not None else _decimal_or_none(order.shipping_cost),
            currency=shipment.currency or self.settings.STALLION_DEFAULT_CURRENCY,
            created_at=now,
            last_updated=now,
            raw_response=shipment.raw_response,
        )
        await self.orders.save_shipment(order.id, record, token)

        logger.info(
            f"[Shipping] Created shipment {record.shipment_id} for order {order.id} "
            f"(tracking {record.tracking_id or 'pending'})"
        )
        return ShipmentOutcome(
            record=record,
            created=True,
            order_id=order.id,
            invoice=order.invoice,
            order_status=order.status,
        )

    def _existing_outcome(self, order) -> ShipmentOutcome:
        if is_reservation(order.shipment_id):
            raise ShipmentInProgressError(
                "Shipment creation already in progress for this order",
                details={"order_id": order.id},
            )
        record = ShipmentRecord.from_stored(order.shipment) or ShipmentRecord(shipment_id=order.shipment_id)
        return ShipmentOutcome(
            record=record,
            created=False,
            order_id=order.id,
            invoice=order.invoice,
            order_status=order.status,
        )

    # ==================== Cancel ====================

    async def cancel(self, order_id: int) -> ShipmentRecord:
        order, record = await self._load_shipment(order_id)

        # Carrier errors propagate; local state only changes once the carrier confirms
        await self.client.cancel_shipment(record.shipment_id)

        now = utc_now()
        record.status = "cancelled"
        record.cancelled_at = now
        record.last_updated = now
        await self.orders.update_shipment(order.id, record)

        logger.info(f"[Shipping] Cancelled shipment {record.shipment_id} for order {order.id}")
        return record

    # ==================== Tracking ====================

    async def refresh_tracking(self, order_id: int) -> TrackingView:
        """Live tracking from the carrier, or the stored record when the carrier call fails."""
        order, record = await self._load_shipment(order_id)

        try:
            tracking = await self.client.get_shipment(record.shipment_id)
        except CarrierError as e:
            logger.warning(
                f"[Shipping] Tracking refresh failed for order {order.id} ({e.code}), serving cached record"
            )
            return TrackingView.from_record(record, source="cached")

        record.tracking_id = tracking.tracking_number or record.tracking_id
        record.tracking_url = tracking.tracking_url or record.tracking_url
        record.status = tracking.status or record.status
        record.last_updated = utc_now()
        record.raw_response = tracking.raw_response
        await self.orders.update_shipment(order.id, record)

        return TrackingView.from_record(record, source="live", events=tracking.events)

    async def apply_status_update(self, order, status: str) -> ShipmentRecord:
        return await apply_status_update(self.orders, order, status)

    # ==================== Passthroughs ====================

    async def track(self, tracking_id: str):
        if not tracking_id:
            raise ShippingValidationError("Tracking ID is required")
        return await self.client.get_shipment_raw(tracking_id)

    async def postage_types(self) -> List[Any]:
        return await self.client.get_postage_types()

    # ==================== Payload building ====================

    def warehouse_address(self) -> Address:
        s = self.settings
        return Address(
            name=s.WAREHOUSE_NAME,
            address1=s.WAREHOUSE_ADDRESS_LINE1,
            city=s.WAREHOUSE_CITY,
            province=s.WAREHOUSE_STATE,
            postal_code=s.WAREHOUSE_POSTAL_CODE,
            country=s.WAREHOUSE_COUNTRY,
            phone=s.WAREHOUSE_PHONE,
            email=s.WAREHOUSE_EMAIL,
        )

    def package_from_parcels(self, parcels: List[Parcel]) -> Dict[str, Any]:
        """Total weight across parcels; dimensions are the largest of each side."""
        s = self.settings
        return {
            "weight": sum(
                (p.weight or s.DEFAULT_PRODUCT_WEIGHT) * (p.quantity or 1) for p in parcels
            ),
            "weight_unit": s.DEFAULT_WEIGHT_UNIT,
            "length": max(p.length or s.DEFAULT_PRODUCT_LENGTH for p in parcels),
            "width": max(p.width or s.DEFAULT_PRODUCT_WIDTH for p in parcels),
            "height": max(p.height or s.DEFAULT_PRODUCT_HEIGHT for p in parcels),
            "size_unit": s.DEFAULT_DIM_UNIT,
        }

    def package_from_cart(self, cart: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        s = self.settings
        weight = 0.0
        for item in cart if isinstance(cart, list) else []:
            if not isinstance(item, dict):
                continue
            variant = item.get("variant") if isinstance(item.get("variant"), dict) else {}
            item_weight = _float_or_none(variant.get("weight")) or _float_or_none(item.get("weight"))
            weight += (item_weight or s.DEFAULT_PRODUCT_WEIGHT) * _quantity(item.get("quantity"))

        return {
            "weight": weight or s.DEFAULT_PRODUCT_WEIGHT,
            "weight_unit": s.DEFAULT_WEIGHT_UNIT,
            "length": s.DEFAULT_PRODUCT_LENGTH,
            "width": s.DEFAULT_PRODUCT_WIDTH,
            "height": s.DEFAULT_PRODUCT_HEIGHT,
            "size_unit": s.DEFAULT_DIM_UNIT,
        }

    def payload_from_order(self, order) -> Dict[str, Any]:
        info = order.user_info if isinstance(order.user_info, dict) else {}
        try:
            destination = Address.model_validate({
                "name": info.get("name"),
                "address": info.get("address"),
                "city": info.get("city"),
                # Storefront orders carry state; province is the legacy key
                "province": info.get("state") or info.get("province"),
                "zipCode": info.get("zipCode"),
                "country": info.get("country"),
                "phone": info.get("contact"),
                "email": info.get("email"),
            })
        except ValidationError as e:
            raise ShippingValidationError(
                "Order shipping address is malformed",
                details={"order_id": order.id, "errors": e.errors(include_url=False, include_input=False)},
            )
        return self._shipment_payload(
            order,
            origin=self.warehouse_address(),
            destination=destination,
            package=self.package_from_cart(order.cart),
            postage_type=self.settings.STALLION_DEFAULT_POSTAGE_TYPE,
        )

    def payload_from_params(self, order, params: ShipmentCreateBody) -> Dict[str, Any]:
        return self._shipment_payload(
            order,
            origin=params.origin or self.warehouse_address(),
            destination=params.destination,
            package=self.package_from_parcels(params.parcels),
            postage_type=params.service,
            reference=params.reference,
        )

    def _shipment_payload(
        self,
        order,
        origin: Address,
        destination: Address,
        package: Dict[str, Any],
        postage_type: str,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        declared_value = (
            _float_or_none(order.total)
            or _float_or_none(order.sub_total)
            or self.settings.DEFAULT_DECLARED_VALUE
        )
        return {
            "from_address": carrier_address(origin),
            "to_address": carrier_address(destination),
            "order_id": reference or f"ORDER-{order.invoice or order.id}",
            **package,
            "package_contents": "merchandise",
            "value": declared_value,
            "currency": self.settings.STALLION_DEFAULT_CURRENCY,
            "package_type": "Parcel",
            "postage_type": postage_type,
            "signature_confirmation": False,
            "insured": False,
            "label_format": "pdf",
        }

    async def _load_shipment(self, order_id: int):
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        record = ShipmentRecord.from_stored(order.shipment)
        if record is None or not record.shipment_id or is_reservation(order.shipment_id):
            raise ShipmentNotFoundError(order_id)
        return order, record


def carrier_address(address: Address) -> Dict[str, Any]:
    """Address in the carrier's shape, truncated to its field limits."""
    return {
        "name": (address.name or "Customer")[:MAX_NAME],
        "company": address.company,
        "address1": (address.address1 or "Unknown Address")[:MAX_ADDRESS],
        "address2": address.address2,
        "city": (address.city or "Unknown")[:MAX_CITY],
        "province_code": (address.province or address.state or DEFAULT_PROVINCE)[:MAX_PROVINCE],
        "postal_code": strip_whitespace(address.postal_code)[:MAX_POSTAL],
        "country_code": (address.country or "CA")[:MAX_COUNTRY],
        "phone": address.phone or "",
        "email": address.email or "",
    }


def _float_or_none(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _quantity(value: Any) -> int:
    quantity = _float_or_none(value)
    if quantity is None or quantity <= 0:
        return 1
    return int(quantity)
