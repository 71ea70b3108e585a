"""
共通定数

ゲートウェイとプロセッサの両方で使う値をここに集約する。
"""

from decimal import Decimal

# ── 注文のビジネスルール ─────────────────────────
ORDER_MAX_VALUE = Decimal("1000000")
ORDER_MAX_QUANTITY = 10000

# 注文は挿入時点で完了状態になる（中間状態は持たない）
ORDER_STATUS_COMPLETED = "completed"

# ── キューメッセージの属性名 ─────────────────────
ORDER_MESSAGE_TYPE = "StandardOrder"
ATTR_ORDER_TYPE = "OrderType"
ATTR_CORRELATION_ID = "CorrelationId"
ATTR_TRACEPARENT = "Traceparent"
ATTR_TRACESTATE = "Tracestate"

SERVICE_VERSION = "1.0.0"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
