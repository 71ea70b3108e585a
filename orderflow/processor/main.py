"""
Processor — エントリーポイント

    python -m orderflow.processor.main

キューから注文を取り出して DB に保存するワーカー。HTTP は持たない。
SIGINT / SIGTERM を受けたら新しいポーリングを止め、実行中のサイクルが
終わるのを shutdown_grace 秒まで待ってから接続を閉じて終了する。
"""

import asyncio
import logging
import signal

import redis.asyncio as aioredis

from ..shared.config import Settings
from ..shared.constants import LOG_FORMAT
from ..shared.database import create_engine, create_session_factory
from ..shared.queue import RedisQueue
from ..shared.telemetry import Telemetry
from .breaker import CircuitBreaker
from .consumer import OrderConsumer
from .handler import OrderMessageHandler
from .liveness import LivenessFile

logger = logging.getLogger(__name__)


def build_consumer(
    settings: Settings,
    redis: aioredis.Redis,
    session_factory,
) -> OrderConsumer:
    queue = RedisQueue(redis, settings.queue_name, settings.visibility_timeout)
    telemetry = Telemetry("processor")
    handler = OrderMessageHandler(
        queue, session_factory, telemetry, settings.max_receive_count
    )
    return OrderConsumer(
        queue,
        handler,
        breaker=CircuitBreaker(
            settings.breaker_threshold,
            settings.breaker_base_delay,
            settings.breaker_max_delay,
        ),
        liveness=LivenessFile(settings.liveness_file),
        telemetry=telemetry,
        max_messages=settings.max_messages,
        wait_seconds=settings.wait_seconds,
    )


async def run(settings: Settings) -> None:
    engine = create_engine(settings.database_url)
    redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
    consumer = build_consumer(settings, redis_conn, create_session_factory(engine))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    logger.info("Starting Order Processor...")
    logger.info("Queue: %s (visibility timeout %ss)", settings.queue_name, settings.visibility_timeout)

    task = asyncio.create_task(consumer.run())
    try:
        await consumer.wait_for_stop()
        logger.info("Shutting down gracefully...")
        try:
            # 処理中のメッセージが猶予内に終わらなければキャンセルする
            await asyncio.wait_for(task, timeout=settings.shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "In-flight cycle did not finish within %.1fs; cancelled", settings.shutdown_grace
            )
    finally:
        if not task.done():
            task.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await engine.dispose()
        await redis_conn.aclose()
        logger.info("Order Processor stopped")


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
