"""
Gateway — 注文受付サービス

ビジネスルールを検証し、注文をキューに積む。
永続化はキューの先にいるプロセッサの仕事で、ここでは行わない。

  POST /api/orders ─▶ OrderService.submit ─▶ RedisQueue.enqueue ─▶ (processor)

項目単位の入力検証 (型・範囲・必須) は HTTP 層で済んでいる前提。
ここで再確認するのは合計金額の上限だけ。
"""

import logging
from decimal import Decimal

from pydantic import BaseModel

from ..shared.constants import (
    ATTR_CORRELATION_ID,
    ATTR_ORDER_TYPE,
    ORDER_MAX_VALUE,
    ORDER_MESSAGE_TYPE,
)
from ..shared.events import OrderEcho, OrderRequest, Principal
from ..shared.queue import RedisQueue
from ..shared.telemetry import Telemetry

logger = logging.getLogger(__name__)


class OrderData(BaseModel):
    product_id: int | None = None
    product_name: str
    sku: str | None = None
    quantity: int
    total_price: Decimal


class OrderAccepted(BaseModel):
    message_id: str
    order: OrderEcho


class OrderTooLarge(BaseModel):
    """合計金額が上限を超えた（キューには積まない）"""
    error: str = "Order total exceeds maximum allowed value"
    message: str


class OrderService:
    def __init__(
        self,
        queue: RedisQueue,
        telemetry: Telemetry | None = None,
        max_order_value: Decimal = ORDER_MAX_VALUE,
    ):
        self.queue = queue
        self.telemetry = telemetry or Telemetry("gateway")
        self.max_order_value = max_order_value

    def validate_business_rules(self, order: OrderRequest) -> OrderTooLarge | None:
        # 上限ちょうどは受け付ける
        if order.total_price > self.max_order_value:
            return OrderTooLarge(
                message=f"Order total price cannot exceed ${self.max_order_value:,.2f}",
            )
        return None

    async def submit(
        self,
        principal: Principal,
        order_data: OrderData,
        correlation_id: str | None = None,
    ) -> OrderAccepted | OrderTooLarge:
        """
        注文を受け付けてキューに積む。

        ルール違反は OrderTooLarge を返す（例外にしない）。
        キューの障害 (QueueError) はそのまま呼び出し側へ伝える。
        ここではリトライしない。
        """
        order = OrderRequest(
            user_id=principal.user_id,
            product_id=order_data.product_id,
            product_name=order_data.product_name,
            sku=order_data.sku,
            quantity=order_data.quantity,
            total_price=order_data.total_price,
            correlation_id=correlation_id or None,
        )

        rejected = self.validate_business_rules(order)
        if rejected:
            logger.info(
                "Order rejected for user %s: %s", principal.username, rejected.message
            )
            return rejected

        attributes = {ATTR_ORDER_TYPE: ORDER_MESSAGE_TYPE}
        if correlation_id:
            attributes[ATTR_CORRELATION_ID] = correlation_id
        attributes.update(self.telemetry.inject_trace_context())

        message_id = await self.queue.enqueue(order.to_message_body(), attributes)
        self.telemetry.record_submitted(order.product_name)

        # 監査ログ
        logger.info(
            "Order submitted: %s - %s - %s [user:%s]",
            message_id, principal.full_name, order.product_name, principal.username,
        )
        return OrderAccepted(message_id=message_id, order=OrderEcho.from_order(order))
