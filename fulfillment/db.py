"""
共通 DB ユーティリティ

各サービスは自分専用の DB を持つ。ここには全サービスで使う型とセッション生成だけを置く。
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, MetaData
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    UTC の aware datetime を保存・復元する型。

    保存時は UTC の naive datetime に正規化し、読み出し時に tzinfo=UTC を付け直す。
    SQLite でも PostgreSQL でも比較結果が一致する。
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime is not allowed; use UTC-aware values")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, factory


async def init_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    """起動時にテーブルを作成する (存在すれば何もしない)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
