"""
Platform Webhook Ingestion

Entry point for order webhooks from delivery platforms:

    received → verified → mapped → deduplicated → persisted → fanned out
             → (auto-accepted)

Every gate that fails returns an IngestionResult without writing anything.
Deduplication is enforced by the (platform, platform_order_id) unique
constraint; the select beforehand is only a fast path, and a constraint
violation on insert is treated as the same "already exists" outcome.

Kitchen tickets are written in a second transaction after the order. If that
fails the order is kept and the problem is logged for manual reconciliation.

Author: Khalil Bannouri
Version: 4.0.0
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    KitchenItem,
    Order,
    OrderItem,
    OrderStatus,
    Platform,
    PlatformConfig,
)
from app.services import events
from app.services.aggregator.callbacks import (
    StatusCallbackDispatcher,
    get_callback_dispatcher,
)
from app.services.aggregator.mapper import MappedOrder, map_platform_order
from app.services.aggregator.signature import (
    get_signature_from_headers,
    verify_webhook_signature,
)
from app.services.orders import find_platform_order, next_order_number, serialize_order

logger = logging.getLogger(__name__)


class IngestionOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    DISABLED = "disabled"
    UNAUTHORIZED = "unauthorized"
    FAILED = "failed"


@dataclass
class IngestionResult:
    """
    Outcome of one webhook delivery.

    Attributes:
        outcome: What happened to the delivery
        order_id: Internal order id (created or pre-existing)
        order_number: Human-facing order number
        kitchen_tickets_created: False when tickets need manual reconciliation
        auto_accepted: Order was moved straight to preparing
        error_message: Internal detail for logs; never sent to the platform
    """
    outcome: IngestionOutcome
    order_id: Optional[int] = None
    order_number: Optional[int] = None
    kitchen_tickets_created: bool = False
    auto_accepted: bool = False
    error_message: Optional[str] = None


def build_order(mapped: MappedOrder, order_number: int) -> Order:
    """ORM order (with lines) for a mapped platform payload."""
    return Order(
        order_number=order_number,
        order_type=mapped.order_type,
        status=mapped.status,
        platform=mapped.platform,
        platform_order_id=mapped.platform_order_id,
        customer_name=mapped.customer_name,
        customer_phone=mapped.customer_phone,
        delivery_address=mapped.delivery_address,
        discount=0.0,
        payment_method=mapped.payment_method,
        payment_status=mapped.payment_status,
        items=[
            OrderItem(
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                notes=item.notes,
                position=position,
            )
            for position, item in enumerate(mapped.items)
        ],
    )


def build_kitchen_items(order: Order) -> list[KitchenItem]:
    """One kitchen ticket per order line, tagged with the platform."""
    return [
        KitchenItem(
            order_id=order.id,
            order_number=order.order_number,
            order_item_id=item.id,
            item_name=item.name,
            quantity=item.quantity,
            notes=item.notes,
            is_online=True,
            platform=order.platform,
        )
        for item in order.items
    ]


class WebhookIngestionService:
    """Turns verified platform webhooks into orders and kitchen tickets."""

    def __init__(self, dispatcher: Optional[StatusCallbackDispatcher] = None):
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> StatusCallbackDispatcher:
        return self._dispatcher or get_callback_dispatcher()

    async def ingest(
        self,
        db: AsyncSession,
        platform: Platform,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> IngestionResult:
        """
        Process one webhook delivery.

        Args:
            db: Database session
            platform: Platform the webhook claims to come from
            raw_body: Unparsed request body (signature covers these bytes)
            headers: Request headers

        Returns:
            IngestionResult: never raises for bad payloads or storage errors
        """
        try:
            created = await self._create_order(db, platform, raw_body, headers)
        except Exception as e:
            await db.rollback()
            logger.exception(f"{platform.value} webhook processing failed: {e}")
            return IngestionResult(outcome=IngestionOutcome.FAILED, error_message=str(e))

        if isinstance(created, IngestionResult):
            return created
        order, auto_accept = created

        result = IngestionResult(
            outcome=IngestionOutcome.CREATED,
            order_id=order.id,
            order_number=order.order_number,
        )

        # The order is committed from here on; later problems are logged and
        # the delivery is still acknowledged
        try:
            order, result.kitchen_tickets_created = await self._create_kitchen_items(db, order)

            order_data = serialize_order(order)
            await events.manager.broadcast(events.NEW_ONLINE_ORDER, order_data)
            await events.manager.broadcast(events.KITCHEN_UPDATED, {"type": "new-order", "order": order_data})

            if auto_accept:
                order, result.auto_accepted = await self._auto_accept(db, order)
        except Exception as e:
            await db.rollback()
            logger.exception(
                f"RECONCILE: order #{result.order_number} ({platform.value}) stored, "
                f"follow-up steps failed: {e}"
            )

        return result

    async def _create_order(
        self,
        db: AsyncSession,
        platform: Platform,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> Union[tuple[Order, bool], IngestionResult]:
        """
        Gate, verify, map and insert.

        Returns (order, auto_accept) for a new order, or the IngestionResult
        that ends the delivery early (disabled, unauthorized, duplicate).
        """
        config = await self._load_config(db, platform)
        if config is None or not config.is_enabled:
            logger.warning(f"{platform.value} webhook rejected: integration disabled")
            return IngestionResult(outcome=IngestionOutcome.DISABLED)

        if config.webhook_secret:
            signature = get_signature_from_headers(headers, platform)
            if not await verify_webhook_signature(db, platform, raw_body, signature):
                logger.warning(
                    f"{platform.value} webhook rejected: "
                    f"{'invalid' if signature else 'missing'} signature"
                )
                return IngestionResult(outcome=IngestionOutcome.UNAUTHORIZED)
        else:
            logger.debug(f"{platform.value}: no webhook secret configured, skipping verification")

        auto_accept = config.auto_accept

        payload = json.loads(raw_body)
        mapped = await map_platform_order(db, platform, payload)

        existing = await find_platform_order(db, platform, mapped.platform_order_id)
        if existing is not None:
            logger.info(
                f"{platform.value} order {mapped.platform_order_id} redelivered, "
                f"already #{existing.order_number}"
            )
            return self._duplicate(existing)

        order = await self._persist_order(db, mapped)
        if order is None:
            existing = await find_platform_order(db, platform, mapped.platform_order_id)
            if existing is None:
                raise RuntimeError("Order insert conflicted but no existing order was found")
            return self._duplicate(existing)

        return order, auto_accept

    async def _load_config(self, db: AsyncSession, platform: Platform) -> Optional[PlatformConfig]:
        result = await db.execute(
            select(PlatformConfig).where(PlatformConfig.platform == platform)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _duplicate(existing: Order) -> IngestionResult:
        return IngestionResult(
            outcome=IngestionOutcome.DUPLICATE,
            order_id=existing.id,
            order_number=existing.order_number,
        )

    async def _persist_order(self, db: AsyncSession, mapped: MappedOrder) -> Optional[Order]:
        """Insert the order; None when the dedup constraint fired."""
        order_number = await next_order_number(db)
        order = build_order(mapped, order_number)
        db.add(order)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(
                f"{mapped.platform.value} order {mapped.platform_order_id} "
                f"lost insert race, resolving to existing order"
            )
            return None

        logger.info(
            f"Order #{order.order_number} created from {mapped.platform.value} "
            f"order {mapped.platform_order_id} ({len(order.items)} items, total {order.total:.2f})"
        )
        return order

    async def _reload(self, db: AsyncSession, order_id: int) -> Order:
        """Fresh copy of an order after a rollback expired it."""
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _create_kitchen_items(self, db: AsyncSession, order: Order) -> tuple[Order, bool]:
        order_id = order.id
        label = f"order #{order.order_number} (id={order.id}, {order.platform.value} {order.platform_order_id})"
        try:
            db.add_all(build_kitchen_items(order))
            await db.commit()
            return order, True
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"RECONCILE: {label} saved without kitchen tickets: {e}")
            return await self._reload(db, order_id), False

    async def _auto_accept(self, db: AsyncSession, order: Order) -> tuple[Order, bool]:
        order_id = order.id
        order_number = order.order_number
        try:
            order.status = OrderStatus.PREPARING
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Auto-accept failed for order #{order_number}: {e}")
            return await self._reload(db, order_id), False

        logger.info(f"Order #{order_number} auto-accepted")
        await events.manager.broadcast(events.ORDER_STATUS_UPDATED, serialize_order(order))

        try:
            await self.dispatcher.notify(
                db, order.platform, order.platform_order_id, OrderStatus.PREPARING
            )
        except Exception as e:
            logger.error(f"Accept callback for order #{order_number} not scheduled: {e}")
        return order, True


@lru_cache()
def get_ingestion_service() -> WebhookIngestionService:
    return WebhookIngestionService()
