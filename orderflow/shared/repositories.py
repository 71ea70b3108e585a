"""
データアクセス層

サービス間で共有する SQL をここにまとめる。
テーブル定義 (users / products / orders) はマイグレーション側の管轄。
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .constants import ORDER_STATUS_COMPLETED
from .events import OrderRequest, PersistedOrder, Product


async def ping(session: AsyncSession) -> None:
    """接続確認用の最小クエリ"""
    await session.execute(text("SELECT 1"))


async def user_exists(session: AsyncSession, user_id: int) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM users WHERE id = :id"),
        {"id": user_id},
    )
    return result.first() is not None


async def insert_order(session: AsyncSession, order: OrderRequest) -> int:
    """
    注文を 1 行挿入し、採番された ID を返す。

    ステータスは挿入時点で completed 固定。コミットは呼び出し側で行う。
    """
    result = await session.execute(
        text("""
            INSERT INTO orders
                (user_id, product_name, sku, quantity, total_price, order_status, created_at)
            VALUES
                (:user_id, :product_name, :sku, :quantity, :total_price, :status, :now)
            RETURNING id
        """).bindparams(
            bindparam("total_price", type_=Numeric(10, 2)),
            bindparam("now", type_=DateTime(timezone=True)),
        ),
        {
            "user_id": order.user_id,
            "product_name": order.product_name,
            "sku": order.sku,
            "quantity": order.quantity,
            "total_price": order.total_price,
            "status": ORDER_STATUS_COMPLETED,
            "now": datetime.now(timezone.utc),
        },
    )
    return result.scalar_one()


async def get_all_products(session: AsyncSession) -> list[Product]:
    result = await session.execute(
        text("SELECT id, name, cost, sku FROM products ORDER BY name").columns(
            cost=Numeric(10, 2)
        ),
    )
    return [_product(row) for row in result.fetchall()]


async def get_orders_by_user_id(session: AsyncSession, user_id: int) -> list[PersistedOrder]:
    result = await session.execute(
        text("""
            SELECT id, user_id, product_name, sku, quantity, total_price,
                   order_status, created_at
            FROM orders
            WHERE user_id = :user_id
            ORDER BY created_at DESC, id DESC
        """).columns(total_price=Numeric(10, 2), created_at=DateTime(timezone=True)),
        {"user_id": user_id},
    )
    return [
        PersistedOrder(
            id=row.id,
            user_id=row.user_id,
            product_name=row.product_name,
            sku=row.sku,
            quantity=row.quantity,
            total_price=row.total_price,
            status=row.order_status,
            created_at=row.created_at,
        )
        for row in result.fetchall()
    ]


def _product(row) -> Product:
    return Product(id=row.id, name=row.name, cost=row.cost, sku=row.sku)
