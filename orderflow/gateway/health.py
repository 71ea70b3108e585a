"""
Gateway — レディネスチェック

DB とキューにそれぞれ軽い問い合わせを投げ、結果をキャッシュする。
正常な結果は長め (5 秒)、異常な結果は短め (1 秒) にキャッシュして、
依存先が復旧したらすぐに healthy へ戻れるようにする。
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from ..shared import repositories
from ..shared.constants import SERVICE_VERSION
from ..shared.queue import RedisQueue

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DEGRADED = "degraded"


class CheckResult(BaseModel):
    status: Literal["healthy", "unhealthy"]
    message: str


class HealthStatus(BaseModel):
    status: Literal["healthy", "degraded"]
    timestamp: datetime
    version: str = SERVICE_VERSION
    checks: dict[str, CheckResult]

    @property
    def healthy(self) -> bool:
        return self.status == HEALTHY


class ReadinessReporter:
    def __init__(
        self,
        session_factory: sessionmaker | None,
        queue: RedisQueue,
        healthy_ttl: float = 5.0,
        unhealthy_ttl: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.healthy_ttl = healthy_ttl
        self.unhealthy_ttl = unhealthy_ttl
        self._clock = clock

        self._cached: HealthStatus | None = None
        self._expiry = 0.0
        self._lock = asyncio.Lock()

    async def get_status(self) -> HealthStatus:
        if self._cached and self._clock() < self._expiry:
            return self._cached

        async with self._lock:
            # ロック待ちの間に他の呼び出しが更新していればそれを使う
            if self._cached and self._clock() < self._expiry:
                return self._cached

            checks = {
                "database": await self._check_database(),
                "queue": await self._check_queue(),
            }
            all_healthy = all(c.status == HEALTHY for c in checks.values())
            status = HealthStatus(
                status=HEALTHY if all_healthy else DEGRADED,
                timestamp=datetime.now(timezone.utc),
                checks=checks,
            )
            ttl = self.healthy_ttl if all_healthy else self.unhealthy_ttl
            self._cached = status
            # 期限はチェックが終わった時点から数える
            self._expiry = self._clock() + ttl
            return status

    async def _check_database(self) -> CheckResult:
        if self.session_factory is None:
            return CheckResult(status=UNHEALTHY, message="Database pool not initialized")
        try:
            async with self.session_factory() as session:
                await repositories.ping(session)
        except Exception:
            logger.exception("Health check database error")
            return CheckResult(status=UNHEALTHY, message="Database unavailable")
        return CheckResult(status=HEALTHY, message="Database connection successful")

    async def _check_queue(self) -> CheckResult:
        try:
            await self.queue.ping()
        except Exception:
            logger.exception("Health check queue error")
            return CheckResult(status=UNHEALTHY, message="Queue unavailable")
        return CheckResult(status=HEALTHY, message="Queue accessible")

    async def verify_queue_connectivity(
        self,
        max_retries: int = 10,
        initial_delay: float = 1.0,
        max_delay: float = 5.0,
    ) -> None:
        """起動時にキューへの疎通をリトライ付きで確認する。最後の失敗は送出する。"""
        for attempt in range(1, max_retries + 1):
            try:
                logger.info(
                    "Verifying queue connectivity (attempt %d/%d)...", attempt, max_retries
                )
                await self.queue.ping()
                logger.info("Queue connectivity verified successfully")
                return
            except Exception as e:
                logger.error(
                    "Queue connectivity check failed (attempt %d/%d): %s",
                    attempt, max_retries, e,
                )
                if attempt == max_retries:
                    logger.error(
                        "Queue connectivity verification failed after %d attempts", max_retries
                    )
                    raise
                delay = min(initial_delay * 1.5 ** (attempt - 1), max_delay)
                logger.info("Retrying queue connectivity check in %.1fs...", delay)
                await asyncio.sleep(delay)
