"""
Processor — キューのポーリングループ

  ┌──────┐   ┌─────────┐  受信成功   ┌────────────────────┐
  │ Idle │──▶│ Polling │──────────▶│ Processing (1件ずつ) │──┐
  └──────┘   └─────────┘            └────────────────────┘  │
                 ▲   │ 受信失敗 × threshold                   │
                 │   ▼                                        │
                 │ ┌────────────┐                             │
                 └─│ BackingOff │◀───── (ブレーカー open) ─────┘
                   └────────────┘

メッセージは必ず逐次処理する。DB の接続プールを使い切らないための背圧で、
並列化はしない。1 件の失敗でバッチ全体を止めることもしない。
"""

import asyncio
import logging

from ..shared.queue import RedisQueue
from ..shared.telemetry import Telemetry
from .breaker import CircuitBreaker
from .handler import OrderMessageHandler
from .liveness import LivenessFile

logger = logging.getLogger(__name__)


class OrderConsumer:
    def __init__(
        self,
        queue: RedisQueue,
        handler: OrderMessageHandler,
        breaker: CircuitBreaker | None = None,
        liveness: LivenessFile | None = None,
        telemetry: Telemetry | None = None,
        max_messages: int = 10,
        wait_seconds: float = 20.0,
    ):
        self.queue = queue
        self.handler = handler
        self.breaker = breaker or CircuitBreaker()
        self.liveness = liveness
        self.telemetry = telemetry or handler.telemetry
        self.max_messages = max_messages
        self.wait_seconds = wait_seconds
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """stop() が呼ばれるまでポーリングを続ける。例外では止まらない。"""
        logger.info("Starting order consumer for queue %s", self.queue.name)
        while not self._shutdown.is_set():
            await self.poll_once()
        logger.info("Order consumer stopped")

    def stop(self) -> None:
        """
        新しいサイクルを始めないようにする。

        ロングポーリングの待機はすぐに打ち切る。受信済みメッセージの処理は最後まで走る。
        """
        if not self._shutdown.is_set():
            logger.info("Order consumer shutdown requested")
        self._shutdown.set()

    async def wait_for_stop(self) -> None:
        await self._shutdown.wait()

    async def poll_once(self) -> int:
        """1 サイクル分のポーリングと処理。削除まで済んだ件数を返す。"""
        if self.breaker.should_delay():
            delay = self.breaker.backoff_delay()
            logger.warning(
                "Circuit open (%d failures). Waiting %.0fs...", self.breaker.failures, delay
            )
            if await self._sleep(delay):
                return 0

        try:
            messages = await self.queue.receive(
                self.max_messages, self.wait_seconds, stop_event=self._shutdown
            )
        except Exception as e:
            self.breaker.record_failure()
            self.telemetry.set_breaker_open(self.breaker.is_open)
            logger.error("Error polling queue (failure %d): %s", self.breaker.failures, e)
            return 0

        if messages:
            logger.info("Received %d message(s)", len(messages))
            self.telemetry.record_received(len(messages))

        processed = 0
        for message in messages:
            try:
                if await self.handler.handle(message):
                    processed += 1
            except Exception:
                # 削除していないので再配信される
                logger.exception(
                    "Unhandled error for message %s (correlation_id=%s)",
                    message.message_id, message.correlation_id,
                )

        self.breaker.record_success()
        self.telemetry.set_breaker_open(False)
        self._mark_alive()
        return processed

    async def _sleep(self, delay: float) -> bool:
        """delay 秒待つ。途中で停止要求が来たら True を返して打ち切る。"""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _mark_alive(self) -> None:
        if self.liveness is None:
            return
        try:
            self.liveness.mark()
        except OSError as e:
            logger.error("Failed to write liveness file %s: %s", self.liveness.path, e)
