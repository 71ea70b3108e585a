"""
Gateway — FastAPI エントリーポイント

注文の受付 (キューへの投入)、商品参照、ヘルスチェックを公開する。
注文の永続化は行わない。キューの先の processor が担当する。

  ┌────────┐  POST /api/orders  ┌─────────┐  enqueue  ┌───────┐  receive  ┌───────────┐
  │ Client │ ─────────────────▶ │ Gateway │ ────────▶ │ Redis │ ────────▶ │ Processor │──▶ DB
  └────────┘                    └────┬────┘           └───────┘           └───────────┘
                                     │ 商品キャッシュ / ヘルスチェック
                                     ▼
                                     DB

認証はこのサービスの外 (リバースプロキシ/認証ゲートウェイ) で済んでいる前提で、
検証済みのユーザー情報をヘッダーで受け取る。
"""

import logging
import uuid
from contextlib import asynccontextmanager
from decimal import ROUND_HALF_UP, Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..shared import repositories
from ..shared.config import Settings
from ..shared.constants import LOG_FORMAT, ORDER_MAX_QUANTITY
from ..shared.database import create_engine, create_session_factory
from ..shared.errors import ErrorCodes, TransientDependencyError, error_response
from ..shared.events import Principal
from ..shared.queue import RedisQueue
from ..shared.telemetry import Telemetry
from .health import ReadinessReporter
from .orders import OrderData, OrderService, OrderTooLarge
from .products import ProductService

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


# ── Request Models ───────────────────────────────


class PlaceOrderRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: int = Field(ge=1)
    quantity: int = Field(ge=1, le=ORDER_MAX_QUANTITY)


# ── アプリケーション組み立て ─────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    engine: AsyncEngine | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    redis / engine を渡した場合はそれを使い、終了時にも閉じない（テスト用）。
    渡さなければ lifespan で設定から生成して、終了時に閉じる。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        logging.basicConfig(level=cfg.log_level, format=LOG_FORMAT)
        own_redis = redis is None
        own_engine = engine is None
        redis_conn = redis or aioredis.from_url(cfg.redis_url, decode_responses=True)
        db_engine = engine or create_engine(cfg.database_url)
        session_factory = create_session_factory(db_engine)

        queue = RedisQueue(redis_conn, cfg.queue_name, cfg.visibility_timeout)
        telemetry = Telemetry("gateway")
        app.state.session_factory = session_factory
        app.state.orders = OrderService(queue, telemetry)
        app.state.products = ProductService(session_factory, cfg.products_cache_ttl)
        app.state.health = ReadinessReporter(
            session_factory, queue, cfg.health_cache_ttl, cfg.health_unhealthy_ttl
        )
        await app.state.health.verify_queue_connectivity()
        logger.info("Gateway started (queue=%s)", cfg.queue_name)
        yield
        if own_redis:
            await redis_conn.aclose()
        if own_engine:
            await db_engine.dispose()

    app = FastAPI(title="Order Gateway", lifespan=lifespan)

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        cid = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = cid
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_response(
                ErrorCodes.VALIDATION_FAILED,
                "Validation failed",
                _correlation_id(request),
                details=[
                    {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
                    for e in exc.errors()
                ],
            ),
        )

    @app.exception_handler(TransientDependencyError)
    @app.exception_handler(SQLAlchemyError)
    async def on_dependency_error(request: Request, exc: Exception):
        logger.error("Dependency failure on %s %s: %s", request.method, request.url.path, exc)
        # 内部の詳細は返さない
        return JSONResponse(
            status_code=503,
            content=error_response(
                ErrorCodes.SERVICE_UNAVAILABLE,
                "Service temporarily unavailable, please try again",
                _correlation_id(request),
            ),
        )

    @app.exception_handler(_Unauthenticated)
    async def on_unauthenticated(request: Request, exc: _Unauthenticated):
        return JSONResponse(
            status_code=401,
            content=error_response(
                ErrorCodes.AUTHENTICATION_REQUIRED,
                "Authentication required",
                exc.correlation_id,
            ),
        )

    _register_routes(app)
    return app


def _correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)


async def get_principal(
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_username: str | None = Header(default=None),
    x_user_full_name: str | None = Header(default=None),
) -> Principal:
    """上流の認証ゲートウェイが付与したヘッダーからユーザーを取り出す。"""
    if x_user_id is None or not x_username:
        raise _Unauthenticated(_correlation_id(request))
    return Principal(
        user_id=x_user_id,
        username=x_username,
        full_name=x_user_full_name or x_username,
    )


class _Unauthenticated(Exception):
    def __init__(self, correlation_id: str | None):
        self.correlation_id = correlation_id


# ── ルーティング ─────────────────────────────────


def _register_routes(app: FastAPI) -> None:

    @app.post("/api/orders", status_code=201)
    async def place_order(
        req: PlaceOrderRequest,
        request: Request,
        principal: Principal = Depends(get_principal),
    ):
        """
        注文を受け付ける。

        1. 商品をキャッシュから取得（名前・単価・SKU）
        2. 合計金額を計算
        3. OrderService でルール検証してキューへ投入
        """
        cid = _correlation_id(request)
        product = await app.state.products.get_product(req.product_id)
        if not product:
            return JSONResponse(
                status_code=400,
                content=error_response(
                    ErrorCodes.INVALID_PRODUCT,
                    f"Product with ID {req.product_id} not found",
                    cid,
                ),
            )

        total_price = (product.cost * req.quantity).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        result = await app.state.orders.submit(
            principal,
            OrderData(
                product_id=product.id,
                product_name=product.name,
                sku=product.sku,
                quantity=req.quantity,
                total_price=total_price,
            ),
            cid,
        )
        if isinstance(result, OrderTooLarge):
            return JSONResponse(
                status_code=400,
                content=error_response(ErrorCodes.ORDER_TOO_LARGE, result.message, cid),
            )

        return {
            "success": True,
            "message": "Order submitted successfully",
            "messageId": result.message_id,
            "order": result.order,
        }

    @app.get("/api/orders")
    async def order_history(principal: Principal = Depends(get_principal)):
        """ログインユーザーの注文履歴"""
        async with app.state.session_factory() as session:
            orders = await repositories.get_orders_by_user_id(session, principal.user_id)
        return {"success": True, "orders": orders, "count": len(orders)}

    @app.get("/api/products")
    async def list_products():
        return await app.state.products.list_products()

    @app.get("/api/products/{product_id}")
    async def get_product(product_id: int, request: Request):
        product = await app.state.products.get_product(product_id)
        if not product:
            return JSONResponse(
                status_code=404,
                content=error_response(
                    ErrorCodes.NOT_FOUND, "Product not found", _correlation_id(request)
                ),
            )
        return product

    @app.get("/health")
    async def health():
        status = await app.state.health.get_status()
        return JSONResponse(
            status_code=200 if status.healthy else 503,
            content=status.model_dump(mode="json"),
        )

    @app.get("/health/live")
    async def live():
        return {"status": "ok", "service": "gateway"}


app = create_app()
