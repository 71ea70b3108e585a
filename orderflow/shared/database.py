"""
DB 接続プール

エンジンはプロセスで 1 つ。接続は処理単位ごとに
`async with session_factory() as session:` で借りて返す。
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    kwargs.setdefault("echo", False)
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
