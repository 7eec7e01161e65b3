"""
Tests for webhook ingestion: gates, deduplication, kitchen tickets and
auto-accept.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from app.models import KitchenItem, KitchenStatus, Order, OrderStatus, Platform
from app.services import events
from app.services.aggregator import ingestion
from app.services.aggregator.callbacks import CallbackDisposition, StatusCallbackDispatcher
from app.services.aggregator.ingestion import IngestionOutcome, WebhookIngestionService


async def count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestIngestionGates:

    @pytest.mark.asyncio
    async def test_no_config_is_disabled(self, db_session, swiggy_payload, signed):
        body, headers = signed(swiggy_payload())
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.DISABLED
        assert await count(db_session, Order) == 0

    @pytest.mark.asyncio
    async def test_disabled_config(self, db_session, make_config, swiggy_payload, signed):
        await make_config(is_enabled=False)
        body, headers = signed(swiggy_payload())
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.DISABLED

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, db_session, make_config, swiggy_payload, signed):
        await make_config()
        body, headers = signed(swiggy_payload(), secret="wrong-secret")
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.UNAUTHORIZED
        assert await count(db_session, Order) == 0

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, db_session, make_config, swiggy_payload):
        await make_config()
        body = json.dumps(swiggy_payload()).encode()
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, {})

        assert result.outcome == IngestionOutcome.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_no_secret_skips_verification(self, db_session, make_config, swiggy_payload):
        await make_config(webhook_secret="")
        body = json.dumps(swiggy_payload()).encode()
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, {})

        assert result.outcome == IngestionOutcome.CREATED

    @pytest.mark.asyncio
    async def test_malformed_payload_fails_without_writes(self, db_session, make_config, signed, broadcast):
        await make_config()
        body, headers = signed({"order_id": "SW-1", "items": []})
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.FAILED
        assert "no line items" in result.error_message
        assert await count(db_session, Order) == 0
        broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_fails(self, db_session, make_config):
        await make_config(webhook_secret="")
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, b"{not json", {})

        assert result.outcome == IngestionOutcome.FAILED


class TestOrderCreation:

    @pytest.mark.asyncio
    async def test_creates_order_and_kitchen_tickets(
        self, db_session, make_config, menu_items, swiggy_payload, signed, broadcast
    ):
        await make_config()
        body, headers = signed(swiggy_payload())
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.CREATED
        assert result.kitchen_tickets_created is True
        assert result.auto_accepted is False
        assert result.order_number == 1001

        order = await db_session.get(Order, result.order_id)
        assert order.status == OrderStatus.PENDING
        assert order.platform == Platform.SWIGGY
        assert order.subtotal == 660.0
        assert order.tax == 33.0
        assert order.total == 693.0
        assert all(item.menu_item_id is not None for item in order.items)

        tickets = (await db_session.execute(
            select(KitchenItem).where(KitchenItem.order_id == order.id).order_by(KitchenItem.id)
        )).scalars().all()
        assert [(t.item_name, t.quantity) for t in tickets] == [
            ("Paneer Butter Masala", 2),
            ("Garlic Naan", 3),
        ]
        assert all(t.is_online and t.platform == Platform.SWIGGY for t in tickets)
        assert all(t.status == KitchenStatus.QUEUED for t in tickets)
        assert tickets[1].notes == "extra butter"

        emitted = [call.args[0] for call in broadcast.await_args_list]
        assert emitted == [events.NEW_ONLINE_ORDER, events.KITCHEN_UPDATED]
        assert broadcast.await_args_list[1].args[1]["type"] == "new-order"

    @pytest.mark.asyncio
    async def test_order_numbers_are_sequential(self, db_session, make_config, swiggy_payload, signed):
        await make_config()
        service = WebhookIngestionService()

        numbers = []
        for order_id in ("SW-1", "SW-2", "SW-3"):
            body, headers = signed(swiggy_payload(order_id))
            numbers.append((await service.ingest(db_session, Platform.SWIGGY, body, headers)).order_number)

        assert numbers == [1001, 1002, 1003]

    @pytest.mark.asyncio
    async def test_same_id_on_other_platform_is_a_new_order(
        self, db_session, make_config, swiggy_payload, signed
    ):
        await make_config(Platform.SWIGGY)
        await make_config(Platform.ZOMATO)
        service = WebhookIngestionService()

        body, headers = signed(swiggy_payload("SHARED-1"), Platform.SWIGGY)
        first = await service.ingest(db_session, Platform.SWIGGY, body, headers)
        body, headers = signed(swiggy_payload("SHARED-1"), Platform.ZOMATO)
        second = await service.ingest(db_session, Platform.ZOMATO, body, headers)

        assert first.outcome == second.outcome == IngestionOutcome.CREATED
        assert first.order_id != second.order_id


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_redelivery_returns_existing_order(
        self, db_session, make_config, swiggy_payload, signed, broadcast
    ):
        await make_config()
        service = WebhookIngestionService()
        body, headers = signed(swiggy_payload())

        first = await service.ingest(db_session, Platform.SWIGGY, body, headers)
        broadcast.reset_mock()
        second = await service.ingest(db_session, Platform.SWIGGY, body, headers)

        assert second.outcome == IngestionOutcome.DUPLICATE
        assert second.order_id == first.order_id
        assert second.order_number == first.order_number
        assert await count(db_session, Order) == 1
        assert await count(db_session, KitchenItem) == 2
        broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insert_race_resolves_to_existing_order(
        self, db_session, make_config, swiggy_payload, signed
    ):
        await make_config()
        service = WebhookIngestionService()
        body, headers = signed(swiggy_payload())
        first = await service.ingest(db_session, Platform.SWIGGY, body, headers)

        real_find = ingestion.find_platform_order
        calls = []

        async def racing_find(db, platform, platform_order_id):
            # The fast-path lookup misses, as if the other delivery committed just after it
            calls.append(platform_order_id)
            if len(calls) == 1:
                return None
            return await real_find(db, platform, platform_order_id)

        with patch.object(ingestion, "find_platform_order", racing_find):
            second = await service.ingest(db_session, Platform.SWIGGY, body, headers)

        assert second.outcome == IngestionOutcome.DUPLICATE
        assert second.order_id == first.order_id
        assert await count(db_session, Order) == 1

        body, headers = signed(swiggy_payload("SW-NEXT"))
        third = await service.ingest(db_session, Platform.SWIGGY, body, headers)
        assert third.order_number == first.order_number + 1


class TestKitchenTicketFailure:

    @pytest.mark.asyncio
    async def test_order_kept_when_tickets_fail(self, db_session, make_config, swiggy_payload, signed, caplog):
        await make_config()
        body, headers = signed(swiggy_payload())

        def broken_tickets(order):
            return [KitchenItem(order_id=order.id, order_number=order.order_number, item_name=None, quantity=1)]

        with patch.object(ingestion, "build_kitchen_items", broken_tickets):
            result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.CREATED
        assert result.kitchen_tickets_created is False
        assert await count(db_session, Order) == 1
        assert await count(db_session, KitchenItem) == 0
        assert "RECONCILE" in caplog.text


class TestAutoAccept:

    @pytest.mark.asyncio
    async def test_auto_accept_moves_to_preparing_and_notifies(
        self, db_session, make_config, swiggy_payload, signed, broadcast, enqueued
    ):
        await make_config(auto_accept=True)
        body, headers = signed(swiggy_payload())
        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.auto_accepted is True
        order = await db_session.get(Order, result.order_id)
        assert order.status == OrderStatus.PREPARING

        emitted = [call.args[0] for call in broadcast.await_args_list]
        assert emitted[-1] == events.ORDER_STATUS_UPDATED

        enqueued.assert_called_once()
        platform, url, payload = enqueued.call_args.args
        assert platform == "swiggy"
        assert url == "https://partner.swiggy.test/api/v1/orders/SW-1001/accept"
        assert payload["status"] == "accept"
        assert payload["preparation_time"] == 25

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_fail_ingestion(
        self, db_session, make_config, swiggy_payload, signed
    ):
        await make_config(auto_accept=True)
        dispatcher = StatusCallbackDispatcher()
        dispatcher.notify = AsyncMock(side_effect=RuntimeError("boom"))
        body, headers = signed(swiggy_payload())

        result = await WebhookIngestionService(dispatcher=dispatcher).ingest(
            db_session, Platform.SWIGGY, body, headers
        )

        assert result.outcome == IngestionOutcome.CREATED
        assert result.auto_accepted is True

    @pytest.mark.asyncio
    async def test_broker_down_does_not_fail_ingestion(
        self, db_session, make_config, swiggy_payload, signed, enqueued
    ):
        await make_config(auto_accept=True)
        enqueued.side_effect = ConnectionError("redis unavailable")
        body, headers = signed(swiggy_payload())

        dispatcher = StatusCallbackDispatcher()
        result = await WebhookIngestionService(dispatcher=dispatcher).ingest(
            db_session, Platform.SWIGGY, body, headers
        )

        assert result.outcome == IngestionOutcome.CREATED
        callback = await dispatcher.notify(db_session, Platform.SWIGGY, "SW-1001", OrderStatus.PREPARING)
        assert callback.disposition == CallbackDisposition.ENQUEUE_FAILED


class TestUnexpectedErrors:

    @pytest.mark.asyncio
    async def test_config_lookup_error_is_a_generic_failure(self, db_session, swiggy_payload, signed):
        body, headers = signed(swiggy_payload())

        with patch.object(
            WebhookIngestionService, "_load_config", AsyncMock(side_effect=RuntimeError("connection reset"))
        ):
            result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.FAILED
        assert result.order_id is None

    @pytest.mark.asyncio
    async def test_fan_out_error_after_commit_keeps_order(
        self, db_session, make_config, swiggy_payload, signed, broadcast, caplog
    ):
        await make_config()
        broadcast.side_effect = RuntimeError("socket layer down")
        body, headers = signed(swiggy_payload())

        result = await WebhookIngestionService().ingest(db_session, Platform.SWIGGY, body, headers)

        assert result.outcome == IngestionOutcome.CREATED
        assert result.kitchen_tickets_created is True
        assert await count(db_session, Order) == 1
        assert await count(db_session, KitchenItem) == 2
        assert "RECONCILE" in caplog.text
