"""
Stallion Express webhook ingestion

- Verifies the HMAC-SHA256 signature over the raw request body
- Maps shipment lifecycle events onto the matching order
- Never fails the sender once the signature passes: processing errors are
  logged and parked in webhook_failures for replay

Signature policy: with no STALLION_WEBHOOK_SECRET configured, or no
signature header sent, the webhook is accepted unverified unless
STALLION_WEBHOOK_REQUIRE_SIGNATURE is set.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select

from shipping_bridge.core.config import Settings, settings as default_settings
from shipping_bridge.core.database import get_db_session
from shipping_bridge.models.webhook_failure import WebhookFailure, WebhookFailureStatus
from shipping_bridge.services.order_store import OrderRepository
from shipping_bridge.services.shipping_service import apply_status_update

logger = logging.getLogger(__name__)

EVENT_PREFIX = "shipment."

# Recognized lifecycle events -> status implied when data.status is absent
EVENT_STATUS = {
    "created": "created",
    "updated": None,
    "in_transit": "in_transit",
    "delivered": "delivered",
    "failed": "failed",
}

OUTCOME_REJECTED = "rejected"
OUTCOME_APPLIED = "applied"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_FAILED = "failed"


@dataclass
class WebhookResult:
    accepted: bool
    outcome: str


def normalize_event(event: Optional[str]) -> str:
    """'shipment.in_transit' and 'in_transit' are the same event."""
    event = (event or "").strip()
    if event.startswith(EVENT_PREFIX):
        event = event[len(EVENT_PREFIX):]
    return event


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class WebhookFailureQueue:
    """Durable retry queue backed by webhook_failures, on its own session."""

    def __init__(self, session_factory=get_db_session):
        self._session_factory = session_factory

    async def record(self, event: Optional[str], data: Dict[str, Any], error: Exception) -> None:
        async with self._session_factory() as db:
            db.add(WebhookFailure(
                event=event or "",
                payload=data,
                error_type=type(error).__name__,
                error_message=str(error)[:2000],
                status=WebhookFailureStatus.PENDING.value,
                retry_count=0,
            ))

    async def replay(self, apply, limit: int, max_retries: int) -> Tuple[int, int]:
        """
        Re-run apply(event, payload) for pending entries, oldest first.

        Returns (replayed, resolved).
        """
        replayed = resolved = 0
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookFailure)
                .where(WebhookFailure.status == WebhookFailureStatus.PENDING.value)
                .order_by(WebhookFailure.created_at)
                .limit(limit)
            )
            for failure in result.scalars().all():
                replayed += 1
                now = datetime.now(timezone.utc)
                try:
                    await apply(failure.event, failure.payload or {})
                except Exception as e:
                    failure.retry_count = (failure.retry_count or 0) + 1
                    failure.last_retry_at = now
                    failure.error_type = type(e).__name__
                    failure.error_message = str(e)[:2000]
                    if failure.retry_count >= max_retries:
                        failure.status = WebhookFailureStatus.ABANDONED.value
                        logger.error(f"[Webhook] Abandoning failure {failure.id} after {failure.retry_count} retries")
                    continue

                failure.status = WebhookFailureStatus.RESOLVED.value
                failure.resolved_at = now
                resolved += 1
        return replayed, resolved


class WebhookIngestor:

    def __init__(
        self,
        orders: OrderRepository,
        config: Settings = default_settings,
        failures: Optional[WebhookFailureQueue] = None,
    ):
        self.orders = orders
        self.settings = config
        self.failures = failures or WebhookFailureQueue()

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        secret = self.settings.STALLION_WEBHOOK_SECRET
        if not secret or not signature:
            if self.settings.STALLION_WEBHOOK_REQUIRE_SIGNATURE:
                logger.warning("[Webhook] Rejected: signature required but secret or header missing")
                return False
            logger.debug("[Webhook] Accepting unsigned webhook (no secret or no signature header)")
            return True

        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256="):]

        expected = compute_signature(secret, raw_body)
        # Header values may carry non-ASCII text; compare_digest only takes ASCII str
        return hmac.compare_digest(expected.encode(), provided.lower().encode("utf-8", "replace"))

    async def ingest(
        self,
        signature: Optional[str],
        raw_body: bytes,
        event: Optional[str],
        data: Optional[Dict[str, Any]],
    ) -> WebhookResult:
        if not self.verify_signature(raw_body, signature):
            logger.warning(f"[Webhook] Invalid signature for event {event}")
            return WebhookResult(accepted=False, outcome=OUTCOME_REJECTED)
        return await self.process(event, data)

    async def process(self, event: Optional[str], data: Optional[Dict[str, Any]]) -> WebhookResult:
        """Apply an already-verified event, parking it for replay if applying fails."""
        data = data or {}
        logger.info(f"[Webhook] Received event {event}")
        try:
            outcome = await self.apply(event, data)
        except Exception as e:
            logger.exception(f"[Webhook] Failed to apply {event}: {e}")
            await self._park(event, data, e)
            return WebhookResult(accepted=True, outcome=OUTCOME_FAILED)

        return WebhookResult(accepted=True, outcome=outcome)

    async def apply(self, event: Optional[str], data: Dict[str, Any]) -> str:
        name = normalize_event(event)
        if name not in EVENT_STATUS:
            logger.info(f"[Webhook] Unhandled event type: {event}")
            return OUTCOME_IGNORED

        tracking_number = data.get("tracking_number") or data.get("trackingNumber")
        shipment_id = data.get("id") or data.get("shipment_id") or data.get("shipmentId")
        shipment_id = str(shipment_id) if shipment_id is not None else None

        order = await self.orders.find_by_shipment_identifiers(tracking_number, shipment_id)
        if order is None:
            logger.warning(
                f"[Webhook] No order for shipment {shipment_id} / tracking {tracking_number}; dropping {event}"
            )
            return OUTCOME_UNMATCHED

        status = data.get("status") or EVENT_STATUS[name]
        if not status:
            logger.info(f"[Webhook] {event} for order {order.id} carried no status")
            return OUTCOME_IGNORED

        await apply_status_update(self.orders, order, status)
        return OUTCOME_APPLIED

    async def replay_failures(self, limit: int = 50) -> Tuple[int, int]:
        replayed, resolved = await self.failures.replay(
            self.apply, limit=limit, max_retries=self.settings.WEBHOOK_MAX_RETRIES
        )
        logger.info(f"[Webhook] Replayed {replayed} queued failures, {resolved} resolved")
        return replayed, resolved

    async def _park(self, event: Optional[str], data: Dict[str, Any], error: Exception) -> None:
        try:
            await self.failures.record(event, data, error)
        except Exception as e:
            # Sender still gets a 200; the log line is the only trace left
            logger.critical(f"[Webhook] Could not queue failed {event} for replay: {e}; payload={data}")
