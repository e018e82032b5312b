"""
Order store adapter

Narrow repository over the orders table. Every read re-fetches from the
database and every write is committed before returning, so callers never
act on a stale in-memory order.

The shipment identity (orders.shipment_id) is claimed with a single
conditional UPDATE. Two concurrent create requests for the same order
cannot both win the reservation.
"""
import logging
from typing import Optional

from sqlalchemy import select, update, or_, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_bridge.core.exceptions import ShipmentPersistenceError
from shipping_bridge.models.order import Order
from shipping_bridge.schemas.shipping import ShipmentRecord

logger = logging.getLogger(__name__)


class OrderRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reserve_shipment(self, order_id: int, token: str, expected: Optional[str] = None) -> bool:
        """
        Atomically set shipment_id to token.

        Succeeds only while shipment_id still equals expected (NULL when
        expected is None). Returns False when another request got there first.
        """
        condition = Order.shipment_id.is_(None) if expected is None else Order.shipment_id == expected
        stmt = (
            update(Order)
            .where(Order.id == order_id, condition)
            .values(shipment_id=token)
            .execution_options(synchronize_session=False)
        )
        result = await self._write(stmt, f"reserve shipment for order {order_id}")
        return result.rowcount == 1

    async def release_shipment(self, order_id: int, token: str, previous: Optional[str] = None) -> None:
        """Undo a reservation we still hold, restoring the previous marker."""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.shipment_id == token)
            .values(shipment_id=previous)
            .execution_options(synchronize_session=False)
        )
        result = await self._write(stmt, f"release shipment reservation for order {order_id}")
        if result.rowcount != 1:
            logger.warning(f"[OrderStore] Reservation {token} on order {order_id} was already gone at release")

    async def save_shipment(self, order_id: int, record: ShipmentRecord, token: str) -> None:
        """Replace the reservation with the created shipment. Fails if the reservation was lost."""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.shipment_id == token)
            .values(
                shipment=record.to_stored(),
                shipment_id=record.shipment_id,
                shipment_tracking_id=record.tracking_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._write(stmt, f"save shipment for order {order_id}")
        if result.rowcount != 1:
            logger.critical(
                f"[OrderStore] Lost reservation on order {order_id}; carrier shipment "
                f"{record.shipment_id} was created but not recorded"
            )
            raise ShipmentPersistenceError(
                "Shipment was created with the carrier but could not be saved to the order",
                details={"order_id": order_id, "shipment_id": record.shipment_id},
            )

    async def update_shipment(
        self,
        order_id: int,
        record: ShipmentRecord,
        order_status: Optional[str] = None,
    ) -> None:
        """Persist a mutated shipment record, optionally moving the order status too."""
        values = {
            "shipment": record.to_stored(),
            "shipment_tracking_id": record.tracking_id,
        }
        if order_status:
            values["status"] = order_status

        stmt = (
            update(Order)
            .where(Order.id == order_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._write(stmt, f"update shipment for order {order_id}")
        if result.rowcount != 1:
            raise ShipmentPersistenceError(
                "Order disappeared while updating its shipment",
                details={"order_id": order_id},
            )

    async def find_by_shipment_identifiers(
        self,
        tracking_number: Optional[str] = None,
        shipment_id: Optional[str] = None,
    ) -> Optional[Order]:
        """One query over both identifiers; a tracking number match wins."""
        conditions = []
        if tracking_number:
            conditions.append(Order.shipment_tracking_id == tracking_number)
        if shipment_id:
            conditions.append(Order.shipment_id == shipment_id)
        if not conditions:
            return None

        stmt = select(Order).where(or_(*conditions))
        if tracking_number:
            stmt = stmt.order_by(case((Order.shipment_tracking_id == tracking_number, 0), else_=1))
        result = await self.db.execute(stmt.limit(1).execution_options(populate_existing=True))
        return result.scalars().first()

    async def _write(self, stmt, action: str):
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
            return result
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[OrderStore] Failed to {action}: {type(e).__name__}")
            raise ShipmentPersistenceError(
                f"Failed to {action}",
                details={"error_type": type(e).__name__},
            ) from e
