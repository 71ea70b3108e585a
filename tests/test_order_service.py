"""OrderService — ビジネスルールとキュー投入"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from opentelemetry.sdk.trace import TracerProvider

from orderflow.gateway.orders import OrderAccepted, OrderData, OrderService, OrderTooLarge
from orderflow.shared.constants import ORDER_MAX_VALUE
from orderflow.shared.errors import QueueError
from orderflow.shared.events import Principal

ALICE = Principal(user_id=1, username="alice", full_name="Alice Smith")


def order_data(total_price, quantity=1) -> OrderData:
    return OrderData(
        product_id=1,
        product_name="Widget",
        sku="WID-001",
        quantity=quantity,
        total_price=Decimal(str(total_price)),
    )


class TestBusinessRules:

    @pytest.mark.asyncio
    async def test_total_equal_to_maximum_is_accepted(self, queue):
        service = OrderService(queue)
        result = await service.submit(ALICE, order_data(ORDER_MAX_VALUE))
        assert isinstance(result, OrderAccepted)

    @pytest.mark.asyncio
    async def test_total_one_cent_over_maximum_is_rejected(self, queue):
        service = OrderService(queue)

        result = await service.submit(ALICE, order_data(ORDER_MAX_VALUE + Decimal("0.01")))

        assert isinstance(result, OrderTooLarge)
        assert "1,000,000.00" in result.message
        assert await queue.inspect_depth() == 0

    @pytest.mark.asyncio
    async def test_custom_maximum(self, queue):
        service = OrderService(queue, max_order_value=Decimal("100"))
        assert isinstance(await service.submit(ALICE, order_data("100.01")), OrderTooLarge)
        assert isinstance(await service.submit(ALICE, order_data("100.00")), OrderAccepted)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_enqueues_payload_and_attributes(self, queue):
        service = OrderService(queue)

        result = await service.submit(ALICE, order_data("50.00", quantity=2), "cid-123")

        messages = await queue.receive()
        assert len(messages) == 1
        msg = messages[0]
        assert msg.message_id == result.message_id
        assert msg.attributes["OrderType"] == "StandardOrder"
        assert msg.attributes["CorrelationId"] == "cid-123"

        payload = json.loads(msg.body)
        assert payload["userId"] == 1
        assert payload["productId"] == 1
        assert payload["productName"] == "Widget"
        assert payload["sku"] == "WID-001"
        assert payload["quantity"] == 2
        assert Decimal(str(payload["totalPrice"])) == Decimal("50.00")
        assert payload["correlationId"] == "cid-123"
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_echo_contains_only_submitted_fields(self, queue):
        service = OrderService(queue)

        result = await service.submit(ALICE, order_data("25.00"))

        echo = result.order.model_dump(by_alias=True)
        assert set(echo) == {
            "productId", "productName", "sku", "quantity", "totalPrice", "timestamp",
        }

    @pytest.mark.asyncio
    async def test_without_correlation_id_omits_attribute(self, queue):
        await OrderService(queue).submit(ALICE, order_data("25.00"))
        msg = (await queue.receive())[0]
        assert "CorrelationId" not in msg.attributes
        assert "correlationId" not in json.loads(msg.body)

    @pytest.mark.asyncio
    async def test_injects_trace_context_when_span_active(self, queue):
        tracer = TracerProvider().get_tracer("tests")
        service = OrderService(queue)

        with tracer.start_as_current_span("submit"):
            await service.submit(ALICE, order_data("25.00"))

        msg = (await queue.receive())[0]
        assert msg.attributes["Traceparent"].startswith("00-")

    @pytest.mark.asyncio
    async def test_audit_log_names_principal_product_and_message(self, queue, caplog):
        caplog.set_level("INFO", logger="orderflow.gateway.orders")
        result = await OrderService(queue).submit(ALICE, order_data("25.00"))
        assert (
            f"Order submitted: {result.message_id} - Alice Smith - Widget [user:alice]"
            in caplog.text
        )

    @pytest.mark.asyncio
    async def test_counts_submission(self, queue):
        telemetry = MagicMock()
        telemetry.inject_trace_context.return_value = {}
        await OrderService(queue, telemetry).submit(ALICE, order_data("25.00"))
        telemetry.record_submitted.assert_called_once_with("Widget")

    @pytest.mark.asyncio
    async def test_queue_errors_propagate_without_retry(self):
        queue = MagicMock()
        queue.enqueue = AsyncMock(side_effect=QueueError("redis down"))

        with pytest.raises(QueueError):
            await OrderService(queue).submit(ALICE, order_data("25.00"))
        assert queue.enqueue.await_count == 1
