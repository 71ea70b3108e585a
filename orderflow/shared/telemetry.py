"""
トレース・メトリクス

OpenTelemetry API のみに依存する。SDK が構成されていなければ
API 自体が no-op として振る舞うので、呼び出し側は有無を気にしなくてよい。
SDK の構成 (エクスポーター等) はデプロイ環境の責務。
"""

from opentelemetry import metrics, propagate
from opentelemetry.metrics import CallbackOptions, Observation

from .constants import ATTR_TRACEPARENT, ATTR_TRACESTATE


class Telemetry:
    """パイプラインのカウンタとゲージ、トレースコンテキストの伝搬"""

    def __init__(self, service_name: str = "orderflow", meter_provider=None):
        meter = metrics.get_meter(service_name, meter_provider=meter_provider)
        self._submitted = meter.create_counter(
            "orders.submitted", description="Total orders submitted to the queue"
        )
        self._received = meter.create_counter(
            "orders.messages_received", description="Messages received from the queue"
        )
        self._processed = meter.create_counter(
            "orders.processed", description="Orders persisted and acknowledged"
        )
        self._failed = meter.create_counter(
            "orders.failed", description="Messages left in the queue after a failure"
        )
        self.breaker_open = False
        meter.create_observable_gauge(
            "orders.circuit_breaker_open",
            callbacks=[self._observe_breaker],
            description="1 while the consumer circuit breaker is open",
        )

    def inject_trace_context(self) -> dict[str, str]:
        """現在のトレースコンテキストを W3C 形式でメッセージ属性に載せる。"""
        carrier: dict[str, str] = {}
        propagate.inject(carrier)
        attrs = {}
        if carrier.get("traceparent"):
            attrs[ATTR_TRACEPARENT] = carrier["traceparent"]
        if carrier.get("tracestate"):
            attrs[ATTR_TRACESTATE] = carrier["tracestate"]
        return attrs

    def record_submitted(self, product_name: str) -> None:
        self._submitted.add(1, {"product": product_name})

    def record_received(self, count: int) -> None:
        self._received.add(count)

    def record_processed(self) -> None:
        self._processed.add(1)

    def record_failed(self) -> None:
        self._failed.add(1)

    def set_breaker_open(self, is_open: bool) -> None:
        self.breaker_open = is_open

    def _observe_breaker(self, options: CallbackOptions):
        yield Observation(1 if self.breaker_open else 0)
