"""
API dependencies
"""
import asyncio
import logging
from typing import Awaitable, TypeVar

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_bridge.core.database import get_db
from shipping_bridge.services.carrier_config import CarrierConfigProvider
from shipping_bridge.services.order_store import OrderRepository
from shipping_bridge.services.shipping_service import ShippingService
from shipping_bridge.services.stallion_client import StallionClient
from shipping_bridge.services.webhook_service import WebhookIngestor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 499: client closed request (nginx convention)
CLIENT_CLOSED_REQUEST = 499


def get_config_provider(request: Request) -> CarrierConfigProvider:
    """Process-wide provider built in the lifespan."""
    return request.app.state.carrier_config


def get_stallion_client(request: Request) -> StallionClient:
    return request.app.state.stallion_client


async def get_order_repository(db: AsyncSession = Depends(get_db)) -> OrderRepository:
    return OrderRepository(db)


async def get_shipping_service(
    client: StallionClient = Depends(get_stallion_client),
    orders: OrderRepository = Depends(get_order_repository),
) -> ShippingService:
    return ShippingService(orders.db, client, orders=orders)


async def get_webhook_ingestor(
    orders: OrderRepository = Depends(get_order_repository),
) -> WebhookIngestor:
    return WebhookIngestor(orders)


async def cancel_on_disconnect(request: Request, awaitable: Awaitable[T], poll_interval: float = 0.5) -> T:
    """
    Await a carrier call, cancelling it if the inbound client goes away.

    Only for read-only calls: cancelling a shipment creation mid-flight would
    leave the carrier state unknown.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if task in done:
                return task.result()
            if await request.is_disconnected():
                logger.info(f"Client disconnected, cancelling {request.method} {request.url.path}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise HTTPException(status_code=CLIENT_CLOSED_REQUEST, detail="Client closed request")
    finally:
        if not task.done():
            task.cancel()
