"""
Aggregator analytics: per-platform order totals and a daily trend.

Only online (platform) orders are counted. Both platforms are always present
in the totals, zero-filled when they had no orders in the range.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Order, OrderStatus, OrderType, Platform
from app.schemas import AnalyticsResponse, DailyTrendPoint, PlatformStats


def _filters(date_from: Optional[datetime], date_to: Optional[datetime]) -> list:
    conditions = [Order.order_type == OrderType.ONLINE, Order.platform.is_not(None)]
    if date_from is not None:
        conditions.append(Order.created_at >= date_from)
    if date_to is not None:
        conditions.append(Order.created_at <= date_to)
    return conditions


def _as_date(value) -> date:
    # SQLite returns func.date() as text
    if isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(value, datetime):
        return value.date()
    return value


async def get_platform_analytics(
    db: AsyncSession,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> AnalyticsResponse:
    conditions = _filters(date_from, date_to)

    totals_stmt = (
        select(
            Order.platform,
            func.count(Order.id),
            func.coalesce(func.sum(Order.total), 0.0),
            func.coalesce(func.avg(Order.total), 0.0),
            func.sum(case((Order.status == OrderStatus.COMPLETED, 1), else_=0)),
            func.sum(case((Order.status == OrderStatus.CANCELLED, 1), else_=0)),
        )
        .where(*conditions)
        .group_by(Order.platform)
    )

    platforms = {platform: PlatformStats() for platform in Platform}
    for platform, count, revenue, avg_value, completed, cancelled in (await db.execute(totals_stmt)).all():
        platforms[platform] = PlatformStats(
            total_orders=count,
            total_revenue=round(revenue or 0.0, 2),
            avg_order_value=round(avg_value or 0.0, 2),
            completed_orders=completed or 0,
            cancelled_orders=cancelled or 0,
        )

    day = func.date(Order.created_at)
    trend_stmt = (
        select(
            day.label("day"),
            Order.platform,
            func.count(Order.id),
            func.coalesce(func.sum(Order.total), 0.0),
        )
        .where(*conditions)
        .group_by(day, Order.platform)
        .order_by(day, Order.platform)
    )

    daily_trend = [
        DailyTrendPoint(
            date=_as_date(row_day),
            platform=platform,
            orders=count,
            revenue=round(revenue or 0.0, 2),
        )
        for row_day, platform, count, revenue in (await db.execute(trend_stmt)).all()
    ]

    return AnalyticsResponse(platforms=platforms, daily_trend=daily_trend)
