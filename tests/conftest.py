"""
共通フィクスチャ

- Redis は fakeredis (テストごとに独立したサーバー)
- DB は aiosqlite の一時ファイル
- 時刻は FakeClock で進める
"""

from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy import text

from orderflow.shared.database import create_engine, create_session_factory
from orderflow.shared.queue import RedisQueue

SCHEMA = [
    """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY,
        username VARCHAR(50) NOT NULL UNIQUE,
        email VARCHAR(255) NOT NULL UNIQUE,
        full_name VARCHAR(255) NOT NULL,
        password_hash VARCHAR(255) NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE products (
        id INTEGER PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        cost NUMERIC(10, 2) NOT NULL,
        sku VARCHAR(64)
    )
    """,
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        product_name VARCHAR(255) NOT NULL,
        sku VARCHAR(64),
        quantity INTEGER NOT NULL,
        total_price NUMERIC(10, 2) NOT NULL,
        order_status VARCHAR(50) DEFAULT 'pending',
        created_at TIMESTAMP
    )
    """,
]

USERS = [
    {"id": 1, "username": "alice", "email": "alice@example.com", "full_name": "Alice Smith"},
    {"id": 2, "username": "bob", "email": "bob@example.com", "full_name": "Bob Jones"},
]

PRODUCTS = [
    {"id": 1, "name": "Widget", "cost": Decimal("25.00"), "sku": "WID-001"},
    {"id": 2, "name": "Gadget", "cost": Decimal("10.00"), "sku": "GAD-001"},
    {"id": 3, "name": "Mining Rig", "cost": Decimal("600000.00"), "sku": "RIG-001"},
]


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis(redis_server):
    conn = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield conn
    await conn.aclose()


@pytest.fixture
def queue(redis, clock):
    return RedisQueue(redis, "orders-test", visibility_timeout=30.0, poll_interval=0.01, clock=clock)


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with db_engine.begin() as conn:
        for ddl in SCHEMA:
            await conn.execute(text(ddl))
        for user in USERS:
            await conn.execute(
                text(
                    "INSERT INTO users (id, username, email, full_name) "
                    "VALUES (:id, :username, :email, :full_name)"
                ),
                user,
            )
        for product in PRODUCTS:
            await conn.execute(
                text("INSERT INTO products (id, name, cost, sku) VALUES (:id, :name, :cost, :sku)"),
                {**product, "cost": str(product["cost"])},
            )
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def fetch_orders(session_factory):
    async def _fetch() -> list:
        async with session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT user_id, product_name, quantity, total_price, order_status "
                    "FROM orders ORDER BY id"
                )
            )
            return result.fetchall()

    return _fetch
