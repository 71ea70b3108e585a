"""
Gateway — 商品キャッシュ (single-flight)

商品マスタは全件を一括で読み込み、TTL の間メモリに保持する。
期限切れの瞬間に大量のリクエストが来ても、DB への読み込みは 1 回だけ。
最初に来た呼び出しがリフレッシュを開始し、後続は同じタスクを待つ。

  get() ─┬─ 期限内 ───────────────▶ キャッシュから返す
         └─ 期限切れ ─┬─ 進行中なし → refresh タスク開始 ─┐
                      └─ 進行中あり ─────────────────────┴▶ 同じタスクを await
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

from sqlalchemy.orm import sessionmaker

from ..shared import repositories
from ..shared.events import Product

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlightCache(Generic[K, V]):
    """TTL 付きの全件キャッシュ。リフレッシュは同時に 1 つだけ走る。"""

    def __init__(
        self,
        refresh_all: Callable[[], Awaitable[dict[K, V]]],
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        self._refresh_all = refresh_all
        self.ttl = ttl
        self._clock = clock
        self.name = name

        self._data: dict[K, V] | None = None
        self._expiry = 0.0
        self._inflight: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def expired(self) -> bool:
        return self._data is None or self._clock() >= self._expiry

    async def get(self, key: K) -> V | None:
        data = await self.get_all()
        return data.get(key)

    async def get_all(self) -> dict[K, V]:
        if self.expired:
            async with self._lock:
                if self.expired and self._inflight is None:
                    self._inflight = asyncio.create_task(self._refresh())
                task = self._inflight
            if task is not None:
                # 1 つの呼び出しがキャンセルされても共有タスクは止めない
                await asyncio.shield(task)
        return self._data if self._data is not None else {}

    async def _refresh(self) -> None:
        logger.info("Refreshing %s...", self.name)
        try:
            data = await self._refresh_all()
            self._data = dict(data)
            self._expiry = self._clock() + self.ttl
            logger.info(
                "%s refreshed with %d items. Next refresh in %s seconds.",
                self.name, len(self._data), self.ttl,
            )
        except Exception:
            logger.exception("Error refreshing %s", self.name)
            # 既存データがあれば残す。なければ「不明」として空にする。
            if self._data is None:
                self._data = {}
        finally:
            self._inflight = None


class ProductService:
    def __init__(self, session_factory: sessionmaker, ttl: float = 60.0):
        self.session_factory = session_factory
        self.cache: SingleFlightCache[int, Product] = SingleFlightCache(
            self._load_products, ttl, name="products cache"
        )

    async def _load_products(self) -> dict[int, Product]:
        async with self.session_factory() as session:
            products = await repositories.get_all_products(session)
        return {p.id: p for p in products}

    async def get_product(self, product_id: int) -> Product | None:
        return await self.cache.get(product_id)

    async def list_products(self) -> list[Product]:
        products = await self.cache.get_all()
        return sorted(products.values(), key=lambda p: p.name)
