"""
設定 — 環境変数から読み込む

起動時に必須の環境変数がすべて揃っているかを検証し、
足りなければ即座に失敗する (fail fast)。
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

# フィールド名 → 環境変数名
ENV_VARS = {
    "database_url": "DATABASE_URL",
    "redis_url": "REDIS_URL",
    "queue_name": "ORDER_QUEUE_NAME",
    "visibility_timeout": "QUEUE_VISIBILITY_TIMEOUT",
    "max_messages": "MAX_MESSAGES",
    "wait_seconds": "QUEUE_WAIT_SECONDS",
    "breaker_threshold": "CIRCUIT_BREAKER_THRESHOLD",
    "breaker_base_delay": "CIRCUIT_BREAKER_BASE_DELAY",
    "breaker_max_delay": "CIRCUIT_BREAKER_MAX_DELAY",
    "liveness_file": "LIVENESS_FILE",
    "liveness_stale_after": "LIVENESS_STALE_AFTER",
    "max_receive_count": "MAX_RECEIVE_COUNT",
    "products_cache_ttl": "PRODUCTS_CACHE_TTL",
    "health_cache_ttl": "HEALTH_CACHE_TTL",
    "health_unhealthy_ttl": "HEALTH_UNHEALTHY_TTL",
    "shutdown_grace": "SHUTDOWN_GRACE",
    "log_level": "LOG_LEVEL",
}

REQUIRED = ("database_url",)


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "orders"
    visibility_timeout: float = Field(30.0, gt=0)
    max_messages: int = 10
    # 0 だと空のキューを休みなく叩き続ける
    wait_seconds: float = Field(20.0, gt=0)

    breaker_threshold: int = 5
    breaker_base_delay: float = 5.0
    breaker_max_delay: float = 120.0

    liveness_file: str = "/tmp/processor-liveness"
    liveness_stale_after: float = 120.0
    # 未設定なら解析不能メッセージをキューに残し続ける
    max_receive_count: int | None = None

    products_cache_ttl: float = 60.0
    health_cache_ttl: float = 5.0
    health_unhealthy_ttl: float = 1.0

    shutdown_grace: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        環境変数から設定を組み立てる。

        必須変数が欠けている場合はまとめて ConfigError にする。
        数値として解釈できない値も ConfigError。
        """
        if environ is None:
            environ = os.environ

        missing = [ENV_VARS[f] for f in REQUIRED if not environ.get(ENV_VARS[f])]
        if missing:
            plural = "s" if len(missing) > 1 else ""
            raise ConfigError(
                f"Missing required environment variable{plural}: {', '.join(missing)}"
            )

        values = {
            field: environ[var]
            for field, var in ENV_VARS.items()
            if environ.get(var) not in (None, "")
        }
        try:
            settings = cls(**values)
        except ValidationError as e:
            bad = ", ".join(ENV_VARS[str(err["loc"][0])] for err in e.errors())
            raise ConfigError(f"Invalid value for environment variable(s): {bad}") from e

        # SQS 互換: 一度に受信できるのは最大 10 件
        settings.max_messages = max(1, min(settings.max_messages, 10))
        settings.log_level = settings.log_level.upper()
        return settings
