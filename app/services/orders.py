"""
Order Service

Order numbering and staff-driven status transitions.

Order numbers come from a database counter incremented atomically
(UPDATE ... RETURNING), so concurrent creators never receive the same number.
"""

import logging
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models import Counter, KitchenItem, KitchenStatus, ORDER_NUMBER_COUNTER, Order, OrderStatus, OrderType
from app.schemas import OrderResponse
from app.services import events
from app.services.aggregator.callbacks import CallbackResult, get_callback_dispatcher

logger = logging.getLogger(__name__)

# Lifecycle order; cancellation is allowed from any non-terminal state
STATUS_SEQUENCE = [
    OrderStatus.PENDING,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.SERVED,
    OrderStatus.COMPLETED,
]
TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}


class InvalidStatusTransition(ValueError):
    """Requested status change is not allowed by the order lifecycle."""


class NotAnOnlineOrder(ValueError):
    """Operation only applies to platform orders."""


async def next_order_number(db: AsyncSession) -> int:
    """
    Reserve the next order number.

    The increment runs inside the caller's transaction; the counter row stays
    locked until that transaction ends.
    """
    stmt = (
        update(Counter)
        .where(Counter.name == ORDER_NUMBER_COUNTER)
        .values(value=Counter.value + 1)
        .returning(Counter.value)
    )
    number = (await db.execute(stmt)).scalar_one_or_none()
    if number is not None:
        return number

    # Counter row missing (database created without init_db)
    start = get_settings().order_number_start
    try:
        async with db.begin_nested():
            db.add(Counter(name=ORDER_NUMBER_COUNTER, value=start))
        return start
    except IntegrityError:
        # Another writer seeded it first
        return (await db.execute(stmt)).scalar_one()


async def get_order(db: AsyncSession, order_id: int) -> Optional[Order]:
    result = await db.execute(select(Order).where(Order.id == order_id))
    return result.scalar_one_or_none()


async def find_platform_order(db: AsyncSession, platform, platform_order_id: str) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(
            Order.platform == platform,
            Order.platform_order_id == platform_order_id,
        )
    )
    return result.scalar_one_or_none()


async def lock_order(db: AsyncSession, order_id: int) -> Optional[Order]:
    """
    Re-read the order under a row lock held until the caller commits.

    Concurrent readiness checks on the same order run one after another, so
    the second one sees the tickets the first one committed.
    """
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def count_unready_items(db: AsyncSession, order_id: int) -> int:
    result = await db.execute(
        select(func.count(KitchenItem.id)).where(
            KitchenItem.order_id == order_id,
            KitchenItem.status != KitchenStatus.READY,
        )
    )
    return result.scalar() or 0


def serialize_order(order: Order) -> dict[str, Any]:
    """JSON-ready order representation used for events and responses."""
    return OrderResponse.model_validate(order).model_dump(mode="json")


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    if current == target:
        return
    if current in TERMINAL_STATUSES:
        raise InvalidStatusTransition(f"Order is already {current.value}")
    if target == OrderStatus.CANCELLED:
        return
    if STATUS_SEQUENCE.index(target) < STATUS_SEQUENCE.index(current):
        raise InvalidStatusTransition(
            f"Cannot move order from {current.value} back to {target.value}"
        )


async def notify_platform(
    db: AsyncSession,
    order: Order,
    extra_data: Optional[dict[str, Any]] = None,
) -> Optional[CallbackResult]:
    """
    Dispatch the platform callback for the order's current status.

    Runs after the status change is committed; a dispatch error is logged and
    never undoes or fails the staff action.
    """
    if order.platform is None or not order.platform_order_id:
        return None
    try:
        return await get_callback_dispatcher().notify(
            db,
            order.platform,
            order.platform_order_id,
            order.status,
            extra_data,
        )
    except Exception as e:
        logger.exception(
            f"Order #{order.order_number}: {order.platform.value} status callback "
            f"could not be dispatched: {e}"
        )
        return None


async def update_order_status(
    db: AsyncSession,
    order: Order,
    status: OrderStatus,
    extra_data: Optional[dict[str, Any]] = None,
) -> Order:
    """
    Apply a staff status change.

    Emits order-status-updated and, for platform orders, schedules the
    platform callback. No-op when the status is unchanged.

    Raises:
        InvalidStatusTransition: completed/cancelled orders, backwards moves,
            or ready while kitchen items are still outstanding
    """
    check_transition(order.status, status)
    if order.status == status:
        return order

    if status == OrderStatus.READY:
        # Ready follows the kitchen tickets; staff can only confirm it
        await lock_order(db, order.id)
        check_transition(order.status, status)
        unready = await count_unready_items(db, order.id)
        if unready:
            raise InvalidStatusTransition(
                f"Order #{order.order_number} has {unready} kitchen item(s) not ready"
            )
        if order.status == status:
            return order

    previous = order.status
    order.status = status
    await db.commit()

    logger.info(f"Order #{order.order_number}: {previous.value} → {status.value}")

    await events.manager.broadcast(events.ORDER_STATUS_UPDATED, serialize_order(order))
    await notify_platform(db, order, extra_data)
    return order


async def accept_online_order(db: AsyncSession, order: Order) -> Order:
    """Move a platform order to preparing (staff acceptance)."""
    if order.order_type != OrderType.ONLINE:
        raise NotAnOnlineOrder("Not an online order")
    return await update_order_status(db, order, OrderStatus.PREPARING)
