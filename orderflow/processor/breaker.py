"""
Processor — サーキットブレーカー

キューからの受信が連続で失敗したら開き、次のポーリングの前に
指数バックオフで待つ。プロセスは止めない。受信が 1 回でも成功したら閉じる。

  delay = min(base_delay * 2 ** (failures - threshold), max_delay)
"""

import logging

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(self, threshold: int = 5, base_delay: float = 5.0, max_delay: float = 120.0):
        self.threshold = threshold
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failures = 0
        self.is_open = False

    def record_success(self) -> bool:
        """成功を記録する。開いていたブレーカーを閉じたら True。"""
        was_open = self.is_open
        self.failures = 0
        self.is_open = False
        if was_open:
            logger.info("Circuit breaker closed, queue polling recovered")
        return was_open

    def record_failure(self) -> bool:
        """失敗を記録する。この失敗でブレーカーが開いたら True。"""
        self.failures += 1
        if self.failures >= self.threshold and not self.is_open:
            self.is_open = True
            logger.error(
                "Circuit breaker opened after %d consecutive failures", self.failures
            )
            return True
        return False

    def should_delay(self) -> bool:
        return self.is_open

    def backoff_delay(self) -> float:
        if not self.is_open:
            return 0.0
        exponent = max(self.failures - self.threshold, 0)
        return min(self.base_delay * 2 ** exponent, self.max_delay)
