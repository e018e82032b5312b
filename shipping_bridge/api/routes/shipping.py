"""
Shipping API Routes

Stallion Express endpoints:
- Postage types and rate quotes
- Shipment creation (explicit or from a stored order)
- Tracking (per order, or raw by tracking id)
- Cancellation
- Carrier webhooks and replay of failed webhook applications
- Masked config view (non-production only)

Errors are raised as ShippingBridgeError subclasses and rendered by
core/error_handler.py as {success: false, message, code, details}.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from shipping_bridge.api.deps import (
    cancel_on_disconnect,
    get_config_provider,
    get_shipping_service,
    get_webhook_ingestor,
)
from shipping_bridge.core.config import settings
from shipping_bridge.core.exceptions import ShippingValidationError, WebhookSignatureError
from shipping_bridge.core.rate_limit import limiter
from shipping_bridge.schemas.shipping import (
    CreateFromOrderBody,
    RateRequestBody,
    ShipmentCreateBody,
    WebhookPayload,
)
from shipping_bridge.services.carrier_config import CarrierConfigProvider
from shipping_bridge.services.shipping_service import ShippingService, ShipmentOutcome
from shipping_bridge.services.webhook_service import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/shipping", tags=["shipping"])

SIGNATURE_HEADERS = ("x-stallion-signature", "stallion-signature")


def already_exists_response(outcome: ShipmentOutcome) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": "Shipment already exists for this order",
            "code": "SHIPMENT_EXISTS",
            "shipment": outcome.record.to_stored(),
        },
    )


# ==================== Rates ====================


@router.get("/postage-types")
async def get_postage_types(
    request: Request,
    service: ShippingService = Depends(get_shipping_service),
):
    postage_types = await cancel_on_disconnect(request, service.postage_types())
    return {"success": True, "postageTypes": postage_types}


@router.post("/rates")
@limiter.limit(settings.RATE_LIMIT_RATES)
async def get_rates(
    request: Request,
    body: RateRequestBody,
    service: ShippingService = Depends(get_shipping_service),
):
    """
    Quote carrier rates.

    Origin defaults to the warehouse. Parcels are combined into one package:
    weights summed, dimensions taken as the largest of each side.
    """
    if settings.is_sandbox:
        logger.debug(
            f"[Shipping] /rates origin={bool(body.origin)} destination={bool(body.destination)} "
            f"parcels={len(body.parcels or [])} serviceType={body.service_type}"
        )
    rates = await cancel_on_disconnect(request, service.quote(body))
    return {"success": True, "rates": [rate.to_dict() for rate in rates]}


# ==================== Shipments ====================


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_shipment(
    body: ShipmentCreateBody,
    service: ShippingService = Depends(get_shipping_service),
):
    if body.order_id is None:
        raise ShippingValidationError("Order ID, service, destination, and parcels are required")

    outcome = await service.create_shipment(body.order_id, body, force_retry=body.force_retry)
    if not outcome.created:
        return already_exists_response(outcome)

    return {
        "success": True,
        "message": "Shipment created successfully",
        "shipment": outcome.record.to_stored(),
    }


@router.post("/orders/{order_id}/shipment")
async def create_shipment_from_order(
    order_id: int,
    body: Optional[CreateFromOrderBody] = None,
    service: ShippingService = Depends(get_shipping_service),
):
    """Create a shipment using the order's stored address and cart."""
    force_retry = body.force_retry if body else False
    outcome = await service.create_shipment(order_id, None, force_retry=force_retry)
    if not outcome.created:
        return already_exists_response(outcome)

    return {
        "success": True,
        "message": "Shipment created successfully",
        "shipment": outcome.record.to_stored(),
        "order": outcome.order_summary(),
    }


@router.get("/orders/{order_id}/tracking")
async def get_order_tracking(
    order_id: int,
    service: ShippingService = Depends(get_shipping_service),
):
    view = await service.refresh_tracking(order_id)
    return {"success": True, "tracking": view.to_response(), "source": view.source}


@router.get("/track/{tracking_id}")
async def track_shipment(
    request: Request,
    tracking_id: str,
    service: ShippingService = Depends(get_shipping_service),
):
    tracking = await cancel_on_disconnect(request, service.track(tracking_id))
    return {"success": True, "tracking": tracking}


@router.delete("/cancel/{order_id}")
async def cancel_shipment(
    order_id: int,
    service: ShippingService = Depends(get_shipping_service),
):
    await service.cancel(order_id)
    return {"success": True, "message": "Shipment cancelled successfully"}


# ==================== Webhooks ====================


@router.post("/webhook")
async def stallion_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """
    Receive Stallion Express shipment events.

    The signature is checked against the raw body before it is parsed.
    After that the sender always gets 200, even if the event could not be applied.
    """
    raw_body = await request.body()
    signature = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if request.headers.get(h)),
        None,
    )
    if not ingestor.verify_signature(raw_body, signature):
        raise WebhookSignatureError("Invalid webhook signature")

    try:
        payload = WebhookPayload.model_validate(json.loads(raw_body or b"{}"))
    except ValueError:
        raise ShippingValidationError("Invalid webhook payload")

    result = await ingestor.process(payload.event, payload.data)

    return {"success": True, "received": True, "outcome": result.outcome}


@router.post("/webhook/replay")
async def replay_webhook_failures(
    limit: int = Query(50, ge=1, le=500),
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Re-apply queued webhook failures."""
    replayed, resolved = await ingestor.replay_failures(limit=limit)
    return {"success": True, "replayed": replayed, "resolved": resolved}


# ==================== Debug ====================


@router.get("/debug")
async def debug_config(
    refresh: bool = Query(False),
    provider: CarrierConfigProvider = Depends(get_config_provider),
):
    """Masked carrier config. Not available in production.

    refresh=true drops the cached config first, e.g. after running
    scripts/set_carrier_settings.py.
    """
    if settings.ENVIRONMENT == "production":
        raise HTTPException(status_code=404, detail="Not found")

    if refresh:
        provider.invalidate()

    return {
        "success": True,
        "environment": settings.ENVIRONMENT,
        "config": await provider.describe(),
    }
