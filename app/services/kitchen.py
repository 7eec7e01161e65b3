"""
Kitchen Ticket Service

Kitchen staff move tickets queued → cooking → ready. Each change is copied
onto the matching order line, and an order becomes ready as a side effect
once every one of its tickets is ready.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import KitchenItem, KitchenStatus, Order, OrderItem, OrderStatus
from app.schemas import KitchenItemResponse
from app.services import events
from app.services.orders import (
    TERMINAL_STATUSES,
    count_unready_items,
    lock_order,
    notify_platform,
    serialize_order,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (KitchenStatus.QUEUED, KitchenStatus.COOKING)

# Orders already at or past ready are not pulled back by ticket changes
_NO_READY_TRANSITION = TERMINAL_STATUSES | {OrderStatus.READY, OrderStatus.SERVED}


@dataclass
class KitchenUpdateResult:
    item: KitchenItem
    order_ready: bool = False


async def list_active_kitchen_items(db: AsyncSession) -> list[KitchenItem]:
    """Queued and cooking tickets, oldest first, higher priority first."""
    result = await db.execute(
        select(KitchenItem)
        .where(KitchenItem.status.in_(ACTIVE_STATUSES))
        .order_by(KitchenItem.created_at.asc(), KitchenItem.priority.desc(), KitchenItem.id.asc())
    )
    return list(result.scalars().all())


async def update_kitchen_item_status(
    db: AsyncSession,
    item_id: int,
    status: KitchenStatus,
) -> Optional[KitchenUpdateResult]:
    """
    Change a ticket's status and propagate it.

    Returns None if the ticket does not exist. The order transitions to
    ready exactly once: only when this change readies the last ticket and
    the order is not already ready or beyond.
    """
    item = await db.get(KitchenItem, item_id)
    if item is None:
        return None

    # Row lock on the order serializes last-ticket checks for that order
    order: Optional[Order] = None
    if status == KitchenStatus.READY:
        order = await lock_order(db, item.order_id)

    item.status = status
    if item.order_item_id is not None:
        order_item = await db.get(OrderItem, item.order_item_id)
        if order_item is not None:
            order_item.kitchen_status = status

    await db.flush()

    order_ready = False
    if (
        order is not None
        and order.status not in _NO_READY_TRANSITION
        and await count_unready_items(db, item.order_id) == 0
    ):
        order.status = OrderStatus.READY
        order_ready = True

    await db.commit()

    await events.manager.broadcast(
        events.KITCHEN_UPDATED,
        {"type": "status-change", "item": KitchenItemResponse.model_validate(item).model_dump(mode="json")},
    )

    if order_ready:
        logger.info(f"Order #{order.order_number}: all kitchen items ready")
        await events.manager.broadcast(events.ORDER_STATUS_UPDATED, serialize_order(order))
        await notify_platform(db, order)

    return KitchenUpdateResult(item=item, order_ready=order_ready)
