"""
Tests for aggregator analytics.
"""

from datetime import date, datetime

import pytest

from app.models import Order, OrderItem, OrderStatus, OrderType, PaymentStatus, Platform
from app.services.aggregator.analytics import get_platform_analytics


@pytest.fixture
def add_order(db_session):
    numbers = iter(range(5001, 6000))

    async def _add(platform, unit_price, status=OrderStatus.PENDING, created_at=datetime(2026, 10, 1, 12, 0),
                   order_type=OrderType.ONLINE):
        number = next(numbers)
        order = Order(
            order_number=number,
            order_type=order_type,
            status=status,
            platform=platform,
            platform_order_id=f"P-{number}" if platform else None,
            payment_status=PaymentStatus.PAID,
            created_at=created_at,
            items=[OrderItem(name="Thali", quantity=1, unit_price=unit_price)],
        )
        db_session.add(order)
        await db_session.commit()
        return order

    return _add


class TestPlatformAnalytics:

    @pytest.mark.asyncio
    async def test_empty_is_zero_filled(self, db_session):
        result = await get_platform_analytics(db_session)

        assert set(result.platforms) == {Platform.SWIGGY, Platform.ZOMATO}
        assert result.platforms[Platform.SWIGGY].total_orders == 0
        assert result.platforms[Platform.ZOMATO].total_revenue == 0.0
        assert result.daily_trend == []

    @pytest.mark.asyncio
    async def test_totals_per_platform(self, db_session, add_order):
        await add_order(Platform.SWIGGY, 100.0, OrderStatus.COMPLETED)
        await add_order(Platform.SWIGGY, 200.0, OrderStatus.CANCELLED)
        await add_order(Platform.SWIGGY, 300.0)
        await add_order(None, 999.0, order_type=OrderType.DINE_IN)

        result = await get_platform_analytics(db_session)
        swiggy = result.platforms[Platform.SWIGGY]

        # totals include 5% tax
        assert swiggy.total_orders == 3
        assert swiggy.total_revenue == 630.0
        assert swiggy.avg_order_value == 210.0
        assert swiggy.completed_orders == 1
        assert swiggy.cancelled_orders == 1
        assert result.platforms[Platform.ZOMATO].total_orders == 0

    @pytest.mark.asyncio
    async def test_daily_trend_and_range(self, db_session, add_order):
        await add_order(Platform.SWIGGY, 100.0, created_at=datetime(2026, 10, 1, 9, 0))
        await add_order(Platform.ZOMATO, 200.0, created_at=datetime(2026, 10, 1, 20, 0))
        await add_order(Platform.SWIGGY, 100.0, created_at=datetime(2026, 10, 2, 13, 0))
        await add_order(Platform.SWIGGY, 100.0, created_at=datetime(2026, 10, 9, 13, 0))

        result = await get_platform_analytics(
            db_session, date_from=datetime(2026, 10, 1), date_to=datetime(2026, 10, 3)
        )

        assert [(p.date, p.platform, p.orders, p.revenue) for p in result.daily_trend] == [
            (date(2026, 10, 1), Platform.SWIGGY, 1, 105.0),
            (date(2026, 10, 1), Platform.ZOMATO, 1, 210.0),
            (date(2026, 10, 2), Platform.SWIGGY, 1, 105.0),
        ]
        assert result.platforms[Platform.SWIGGY].total_orders == 2
