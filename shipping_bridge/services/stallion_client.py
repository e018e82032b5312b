"""
Stallion Express API Client

Thin httpx client over the Stallion v4 REST API:
- Postage types
- Rates
- Shipments (create, fetch, cancel)

Base URL and API key are resolved through the CarrierConfigProvider on every
call, so a settings change takes effect once the provider's cache expires.

Errors are classified into the CarrierError hierarchy. The client never
retries; CarrierUnreachableError.retryable tells the caller whether it may.

The carrier spells the same field several ways across endpoints. The
normalize_* functions at the bottom are the only place that knows this.
"""
import logging
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

import httpx

from shipping_bridge.core.config import settings
from shipping_bridge.core.exceptions import (
    CarrierAuthError,
    CarrierInvalidRequestError,
    CarrierNotConfiguredError,
    CarrierRemoteError,
    CarrierUnreachableError,
)
from shipping_bridge.services.carrier_config import CarrierConfigProvider
from shipping_bridge.services.encryption import mask_secret

logger = logging.getLogger(__name__)

# API endpoints (relative to the v4 base URL)
POSTAGE_TYPES_PATH = "postage-types"
RATES_PATH = "rates"
SHIPMENTS_PATH = "shipments"

NOT_CONFIGURED_MESSAGE = (
    "Stallion API key not configured. Set STALLION_API_KEY_SANDBOX or "
    "STALLION_API_KEY_PROD, or activate the carrier settings record."
)
UNAUTHENTICATED_MESSAGE = (
    "Invalid Stallion API key. Stallion rejected the request; check the API key "
    "for this environment. Keys are issued at https://ship.stallionexpress.ca/account-settings"
)
BAD_REQUEST_MESSAGE = "Bad request - check address and package details"

JsonBody = Union[Dict[str, Any], List[Any]]


@dataclass
class CarrierRate:
    """One rate option returned by the carrier."""
    service_code: Optional[str]
    service_name: Optional[str]
    total: Optional[Decimal]
    currency: str
    delivery_days: Optional[Any] = None
    raw_response: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total"] = str(self.total) if self.total is not None else None
        return data


@dataclass
class CarrierShipment:
    """Result of creating a shipment."""
    shipment_id: Optional[str]
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    status: Optional[str] = None
    cost: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_response: Dict = field(default_factory=dict)


@dataclass
class CarrierTracking:
    """Current state of an existing shipment."""
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    status: Optional[str] = None
    events: List[Any] = field(default_factory=list)
    raw_response: Dict = field(default_factory=dict)


class StallionClient:
    """
    Stallion Express API client.

    One instance lives for the whole application (built in the lifespan);
    the underlying httpx.AsyncClient is created lazily and closed on shutdown.
    """

    def __init__(
        self,
        config_provider: CarrierConfigProvider,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config_provider = config_provider
        self.timeout = timeout if timeout is not None else settings.STALLION_TIMEOUT_SECONDS
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def request(self, method: str, path: str, json: Optional[JsonBody] = None) -> JsonBody:
        """
        Make an authenticated API request.

        Raises CarrierNotConfiguredError before any network I/O when the
        integration is disabled or has no API key.
        """
        config = await self.config_provider.get_config()
        if not config.enabled or not config.api_key:
            logger.error(f"[Stallion API] {method} {path} refused: integration not configured ({config.source})")
            raise CarrierNotConfiguredError(NOT_CONFIGURED_MESSAGE)

        client = await self._get_http_client()
        url = f"{config.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {config.api_key}"}

        logger.debug(
            f"[Stallion API] {method.upper()} {url} | Authorization=Bearer {mask_secret(config.api_key)}"
        )

        try:
            response = await client.request(method.upper(), url, headers=headers, json=json)
        except httpx.RequestError as e:
            logger.error(f"[Stallion API] {method.upper()} {path} failed, no response: {e!r}")
            raise CarrierUnreachableError(
                f"Stallion Express is unreachable: {type(e).__name__}",
                details={"path": path},
            )

        logger.debug(f"[Stallion API] {method.upper()} {path} -> {response.status_code}")
        body = _parse_body(response)

        if response.is_success:
            return body

        status = response.status_code
        remote_message = body.get("message") if isinstance(body, dict) else None
        details = {"status": status, "remote": body}

        logger.error(
            f"[Stallion API] {method.upper()} {path} -> {status}: {remote_message or '(no message)'} "
            f"| api_key={mask_secret(config.api_key)}"
        )

        if status in (401, 403):
            raise CarrierAuthError(UNAUTHENTICATED_MESSAGE, remote_status=status, details=details)
        if status == 400:
            raise CarrierInvalidRequestError(
                remote_message or BAD_REQUEST_MESSAGE, remote_status=status, details=details
            )
        raise CarrierRemoteError(
            remote_message or f"Stallion Express returned HTTP {status}",
            remote_status=status,
            details=details,
        )

    # ==================== Typed operations ====================

    async def get_postage_types(self) -> List[Any]:
        data = await self.request("GET", POSTAGE_TYPES_PATH)
        if isinstance(data, dict):
            for key in ("postage_types", "data"):
                if isinstance(data.get(key), list):
                    return data[key]
            return [data] if data else []
        return data

    async def get_rates(self, payload: Dict[str, Any]) -> List[CarrierRate]:
        logger.info(f"[Stallion API] Requesting rates: weight={payload.get('weight')} to={payload.get('to_address', {}).get('country_code')}")
        data = await self.request("POST", RATES_PATH, json=payload)
        return normalize_rates(data)

    async def create_shipment(self, payload: Dict[str, Any]) -> CarrierShipment:
        logger.info(f"[Stallion API] Creating shipment for {payload.get('order_id')}")
        data = await self.request("POST", SHIPMENTS_PATH, json=payload)
        return normalize_shipment(data)

    async def get_shipment_raw(self, shipment_id: str) -> JsonBody:
        """Carrier shipment payload as-is, for the tracking passthrough."""
        return await self.request("GET", f"{SHIPMENTS_PATH}/{shipment_id}")

    async def get_shipment(self, shipment_id: str) -> CarrierTracking:
        data = await self.get_shipment_raw(shipment_id)
        return normalize_tracking(data)

    async def cancel_shipment(self, shipment_id: str) -> Dict[str, Any]:
        logger.info(f"[Stallion API] Cancelling shipment {shipment_id}")
        data = await self.request("DELETE", f"{SHIPMENTS_PATH}/{shipment_id}")
        return data if isinstance(data, dict) else {"data": data}


def _parse_body(response: httpx.Response) -> JsonBody:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:500]}


# ==================== Normalization ====================


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _unwrap(data: Any, key: str) -> Dict[str, Any]:
    if isinstance(data, dict) and isinstance(data.get(key), dict):
        return data[key]
    return data if isinstance(data, dict) else {}


def normalize_rates(data: Any) -> List[CarrierRate]:
    """Accepts a bare list or {"rates": [...]}."""
    if isinstance(data, dict):
        data = data.get("rates") or []
    if not isinstance(data, list):
        return []

    rates = []
    for item in data:
        if not isinstance(item, dict):
            continue
        code = _first(item, "postage_type", "service_code", "code", "service")
        rates.append(CarrierRate(
            service_code=code,
            service_name=_first(item, "postage_type_name", "name", "service_name") or code,
            total=_to_decimal(_first(item, "total", "rate", "amount", "price")),
            currency=_first(item, "currency") or settings.STALLION_DEFAULT_CURRENCY,
            delivery_days=_first(item, "delivery_days", "transit_days", "estimated_days"),
            raw_response=item,
        ))
    return rates


def normalize_shipment(data: Any) -> CarrierShipment:
    shipment = _unwrap(data, "shipment")
    tracking = shipment.get("tracking") if isinstance(shipment.get("tracking"), dict) else {}
    labels = shipment.get("labels") if isinstance(shipment.get("labels"), list) else []
    first_label = labels[0] if labels and isinstance(labels[0], dict) else {}

    shipment_id = _first(shipment, "id", "shipment_id", "shipmentId")
    return CarrierShipment(
        shipment_id=str(shipment_id) if shipment_id is not None else None,
        tracking_number=_first(shipment, "tracking_number", "trackingNumber") or tracking.get("number"),
        tracking_url=_first(shipment, "tracking_url", "trackingUrl") or tracking.get("url"),
        label_url=_first(shipment, "label_url", "labelUrl") or first_label.get("url"),
        status=_first(shipment, "status"),
        cost=_to_decimal(_first(shipment, "total", "amount", "cost", "price")),
        currency=_first(shipment, "currency"),
        raw_response=shipment,
    )


def normalize_tracking(data: Any) -> CarrierTracking:
    shipment = _unwrap(data, "shipment")
    tracking = shipment.get("tracking") if isinstance(shipment.get("tracking"), dict) else {}
    events = _first(shipment, "events", "tracking_events") or tracking.get("events") or []

    return CarrierTracking(
        tracking_number=_first(shipment, "tracking_number", "trackingNumber") or tracking.get("number"),
        tracking_url=_first(shipment, "tracking_url", "trackingUrl") or tracking.get("url"),
        status=_first(shipment, "status") or tracking.get("status"),
        events=events if isinstance(events, list) else [],
        raw_response=shipment,
    )
