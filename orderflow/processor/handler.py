"""
Processor — メッセージ 1 件の処理

  解析 → ユーザー存在確認 → 注文 INSERT → コミット → キューから削除

削除は永続化に成功した後だけ。途中で失敗したメッセージは削除せず、
可視性タイムアウト後の再配信に任せる (at-least-once)。

解析できないメッセージや、存在しないユーザーを参照するメッセージは
何度再配信されても成功しない。max_receive_count を設定すると、
受信回数がそれに達した時点でデッドレターへ移す。未設定なら
キューに残し続け、受信のたびにログに残す。
"""

import logging

from sqlalchemy.orm import sessionmaker

from ..shared import repositories
from ..shared.errors import MessageParseError, UnknownPrincipalError
from ..shared.events import parse_order
from ..shared.queue import QueueMessage, RedisQueue
from ..shared.telemetry import Telemetry

logger = logging.getLogger(__name__)


class OrderMessageHandler:
    def __init__(
        self,
        queue: RedisQueue,
        session_factory: sessionmaker,
        telemetry: Telemetry | None = None,
        max_receive_count: int | None = None,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.telemetry = telemetry or Telemetry("processor")
        self.max_receive_count = max_receive_count

    async def handle(self, message: QueueMessage) -> bool:
        """メッセージを処理する。削除まで済んだら True。"""
        try:
            order = parse_order(message.body, message.correlation_id)
        except MessageParseError as e:
            logger.error(
                "Unparseable order message %s (correlation_id=%s, receive_count=%d): %s",
                message.message_id, e.correlation_id, message.receive_count, e,
            )
            await self._leave_in_queue(message)
            return False

        try:
            async with self.session_factory() as session:
                # FK 制約に頼らず、挿入直前に存在を確認してログに文脈を残す
                if not await repositories.user_exists(session, order.user_id):
                    raise UnknownPrincipalError(order.user_id)
                order_id = await repositories.insert_order(session, order)
                await session.commit()
        except UnknownPrincipalError as e:
            logger.error(
                "Order message %s references a missing user (correlation_id=%s, receive_count=%d): %s",
                message.message_id, order.correlation_id, message.receive_count, e,
            )
            await self._leave_in_queue(message)
            return False
        except Exception:
            logger.exception(
                "Error persisting order message %s (correlation_id=%s); left in queue for retry",
                message.message_id, order.correlation_id,
            )
            self.telemetry.record_failed()
            return False

        logger.info(
            "Order inserted with ID: %s for user_id: %s (correlation_id=%s)",
            order_id, order.user_id, order.correlation_id,
        )
        # INSERT 後・削除前にクラッシュすると再配信で二重登録になりうる
        await self.queue.delete(message.receipt_handle)
        self.telemetry.record_processed()
        logger.debug("Message %s deleted from queue", message.message_id)
        return True

    async def _leave_in_queue(self, message: QueueMessage) -> None:
        self.telemetry.record_failed()
        if self.max_receive_count and message.receive_count >= self.max_receive_count:
            if await self.queue.dead_letter(message.receipt_handle):
                logger.warning(
                    "Message %s moved to dead-letter after %d receives",
                    message.message_id, message.receive_count,
                )
