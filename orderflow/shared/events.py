"""
注文メッセージ定義

キューに流れるペイロードは OrderRequest を camelCase の JSON にしたもの。
ゲートウェイが作り、プロセッサが解析する。
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import MessageParseError


class Principal(BaseModel):
    """認証済みのユーザー（外部の認証基盤から渡される）"""
    user_id: int
    username: str
    full_name: str


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderRequest(_CamelModel):
    """キューに積む注文。total_price は送信された値をそのまま正とする。"""
    user_id: int
    product_id: int | None = None
    product_name: str
    # sku / product_id は旧クライアント互換のため任意
    sku: str | None = None
    quantity: int = Field(gt=0)
    total_price: Decimal = Field(gt=0)
    correlation_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message_body(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class OrderEcho(_CamelModel):
    """受け付けた注文のエコー。内部フィールドは含めない。"""
    product_id: int | None = None
    product_name: str
    sku: str | None = None
    quantity: int
    total_price: Decimal
    timestamp: datetime

    @classmethod
    def from_order(cls, order: OrderRequest) -> "OrderEcho":
        return cls(
            product_id=order.product_id,
            product_name=order.product_name,
            sku=order.sku,
            quantity=order.quantity,
            total_price=order.total_price,
            timestamp=order.timestamp,
        )


class Product(BaseModel):
    id: int
    name: str
    cost: Decimal
    sku: str | None = None


class PersistedOrder(BaseModel):
    id: int
    user_id: int
    product_name: str
    sku: str | None = None
    quantity: int
    total_price: Decimal
    status: str
    created_at: datetime | None = None


def parse_order(body: str, correlation_id: str | None = None) -> OrderRequest:
    """
    メッセージ本文を OrderRequest に変換する。

    JSON でない・必須フィールドがない・数量や金額が正でない場合は
    MessageParseError。エラーには分かる範囲で correlation id を載せる。
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MessageParseError(f"Message body is not valid JSON: {e}", correlation_id) from e
    if not isinstance(data, dict):
        raise MessageParseError("Message body is not a JSON object", correlation_id)

    correlation_id = data.get("correlationId") or correlation_id
    try:
        return OrderRequest.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise MessageParseError(
            f"Invalid order payload (fields: {', '.join(fields)})", correlation_id
        ) from e
