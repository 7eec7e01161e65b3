"""
Tests for order numbering, totals and staff status transitions.
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import delete

from app.models import (
    Counter,
    KitchenItem,
    KitchenStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentStatus,
    Platform,
)
from app.services import events, orders
from app.services.orders import InvalidStatusTransition, NotAnOnlineOrder, check_transition


async def create_order(db, number=2001, order_type=OrderType.ONLINE, platform=Platform.SWIGGY,
                       platform_order_id="SW-500", status=OrderStatus.PENDING, discount=0.0):
    order = Order(
        order_number=number,
        order_type=order_type,
        status=status,
        platform=platform if order_type == OrderType.ONLINE else None,
        platform_order_id=platform_order_id if order_type == OrderType.ONLINE else None,
        discount=discount,
        payment_status=PaymentStatus.PAID,
        items=[
            OrderItem(name="Masala Dosa", quantity=2, unit_price=99.99, position=0),
            OrderItem(name="Filter Coffee", quantity=1, unit_price=40.0, position=1),
        ],
    )
    db.add(order)
    await db.commit()
    return order


async def add_tickets(db, order, *statuses):
    db.add_all([
        KitchenItem(
            order_id=order.id,
            order_number=order.order_number,
            order_item_id=line.id,
            item_name=line.name,
            quantity=line.quantity,
            status=status,
        )
        for line, status in zip(order.items, statuses)
    ])
    await db.commit()


class TestOrderTotals:

    @pytest.mark.asyncio
    async def test_totals_computed_on_insert(self, db_session):
        order = await create_order(db_session, discount=10.0)

        assert order.subtotal == 239.98
        assert order.tax == 12.0
        assert order.total == 241.98

    @pytest.mark.asyncio
    async def test_totals_recomputed_on_update(self, db_session):
        order = await create_order(db_session)
        order.items.append(OrderItem(name="Vada", quantity=1, unit_price=60.0, position=2))
        order.status = OrderStatus.PREPARING
        await db_session.commit()

        assert order.subtotal == 299.98
        assert order.total == round(299.98 + 15.0, 2)


class TestOrderNumbers:

    @pytest.mark.asyncio
    async def test_counter_increments(self, db_session):
        first = await orders.next_order_number(db_session)
        second = await orders.next_order_number(db_session)
        await db_session.commit()

        assert (first, second) == (1001, 1002)

    @pytest.mark.asyncio
    async def test_missing_counter_row_is_seeded(self, db_session):
        await db_session.execute(delete(Counter))
        await db_session.commit()

        assert await orders.next_order_number(db_session) == 1001
        assert await orders.next_order_number(db_session) == 1002


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY),
        (OrderStatus.READY, OrderStatus.COMPLETED),
        (OrderStatus.PENDING, OrderStatus.CANCELLED),
        (OrderStatus.READY, OrderStatus.CANCELLED),
        (OrderStatus.READY, OrderStatus.READY),
    ])
    def test_allowed(self, current, target):
        check_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.COMPLETED, OrderStatus.PREPARING),
        (OrderStatus.CANCELLED, OrderStatus.PENDING),
        (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
        (OrderStatus.READY, OrderStatus.PREPARING),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidStatusTransition):
            check_transition(current, target)


class TestUpdateOrderStatus:

    @pytest.mark.asyncio
    async def test_platform_order_notifies(self, db_session, make_config, broadcast, enqueued):
        await make_config()
        order = await create_order(db_session)

        await orders.update_order_status(db_session, order, OrderStatus.READY)

        assert order.status == OrderStatus.READY
        broadcast.assert_awaited_once()
        assert broadcast.await_args.args[0] == events.ORDER_STATUS_UPDATED
        assert broadcast.await_args.args[1]["status"] == "ready"
        enqueued.assert_called_once()
        assert enqueued.call_args.args[1].endswith("/api/v1/orders/SW-500/ready")

    @pytest.mark.asyncio
    async def test_cancel_forwards_reason(self, db_session, make_config, enqueued):
        await make_config()
        order = await create_order(db_session)

        await orders.update_order_status(db_session, order, OrderStatus.CANCELLED, {"reason": "out of stock"})

        payload = enqueued.call_args.args[2]
        assert payload["status"] == "cancel"
        assert payload["reason"] == "out of stock"

    @pytest.mark.asyncio
    async def test_dine_in_order_does_not_notify(self, db_session, make_config, enqueued):
        await make_config()
        order = await create_order(db_session, order_type=OrderType.DINE_IN)

        await orders.update_order_status(db_session, order, OrderStatus.PREPARING)

        enqueued.assert_not_called()

    @pytest.mark.asyncio
    async def test_unchanged_status_is_noop(self, db_session, broadcast):
        order = await create_order(db_session)
        await orders.update_order_status(db_session, order, OrderStatus.PENDING)
        broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminal_order_rejected(self, db_session):
        order = await create_order(db_session, status=OrderStatus.CANCELLED)
        with pytest.raises(InvalidStatusTransition):
            await orders.update_order_status(db_session, order, OrderStatus.PREPARING)

    @pytest.mark.asyncio
    async def test_ready_refused_while_tickets_outstanding(self, db_session, broadcast, enqueued):
        order = await create_order(db_session, status=OrderStatus.PREPARING)
        await add_tickets(db_session, order, KitchenStatus.READY, KitchenStatus.COOKING)

        with pytest.raises(InvalidStatusTransition, match="1 kitchen item"):
            await orders.update_order_status(db_session, order, OrderStatus.READY)

        assert order.status == OrderStatus.PREPARING
        broadcast.assert_not_awaited()
        enqueued.assert_not_called()

    @pytest.mark.asyncio
    async def test_ready_allowed_once_all_tickets_ready(self, db_session):
        order = await create_order(db_session, status=OrderStatus.PREPARING)
        await add_tickets(db_session, order, KitchenStatus.READY, KitchenStatus.READY)

        await orders.update_order_status(db_session, order, OrderStatus.READY)

        assert order.status == OrderStatus.READY

    @pytest.mark.asyncio
    async def test_dispatch_error_does_not_fail_status_change(self, db_session, make_config, broadcast):
        await make_config()
        order = await create_order(db_session)
        dispatcher = AsyncMock()
        dispatcher.notify.side_effect = RuntimeError("config lookup failed")

        with patch.object(orders, "get_callback_dispatcher", return_value=dispatcher):
            await orders.update_order_status(db_session, order, OrderStatus.CANCELLED, {"reason": "closed"})

        assert order.status == OrderStatus.CANCELLED
        dispatcher.notify.assert_awaited_once()
        broadcast.assert_awaited_once()


class TestAcceptOnlineOrder:

    @pytest.mark.asyncio
    async def test_accept(self, db_session, make_config, enqueued):
        await make_config()
        order = await create_order(db_session)

        await orders.accept_online_order(db_session, order)

        assert order.status == OrderStatus.PREPARING
        assert enqueued.call_args.args[2]["status"] == "accept"

    @pytest.mark.asyncio
    async def test_non_online_order_rejected(self, db_session):
        order = await create_order(db_session, order_type=OrderType.TAKEAWAY)
        with pytest.raises(NotAnOnlineOrder):
            await orders.accept_online_order(db_session, order)
