"""
Inventory Service - FastAPI エントリーポイント

本の在庫 (1 冊 = 1 行) を管理するサービス。
確保・解放・売却はすべて条件付き UPDATE で行い、競合は DB の行更新に任せる。
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import INVENTORY_DATABASE_URL, REDIS_URL, configure_logging
from ..db import create_session_factory, init_schema
from ..errors import NotFoundError, install_error_handler
from . import commands, queries
from .schema import metadata

engine, async_session = create_session_factory(INVENTORY_DATABASE_URL)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    configure_logging()
    await init_schema(engine, metadata)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handler(app)


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


# ── Request Models ───────────────────────────────


class AddBookRequest(BaseModel):
    book_id: str
    seller_id: str
    title: str
    price: float = Field(gt=0, allow_inf_nan=False)
    author: str = ""
    condition: str = ""
    weight_kg: float = Field(default=0.5, gt=0)


class ReserveRequest(BaseModel):
    book_ids: list[str]
    buyer_id: str
    order_id: str


class BooksRequest(BaseModel):
    book_ids: list[str]
    order_id: str


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/books", status_code=201)
async def cmd_add_book(
    req: AddBookRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """出品コマンド"""
    return await commands.add_book(
        session,
        redis,
        req.book_id,
        req.seller_id,
        req.title,
        req.price,
        author=req.author,
        condition=req.condition,
        weight_kg=req.weight_kg,
    )


@app.post("/commands/books/reserve")
async def cmd_reserve(
    req: ReserveRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """本の確保コマンド。確保できた ID と確保できなかった ID を返す。"""
    return await commands.reserve_books(
        session, redis, req.book_ids, req.buyer_id, req.order_id
    )


@app.post("/commands/books/release")
async def cmd_release(
    req: BooksRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """本の解放コマンド（補償トランザクション）"""
    return await commands.release_books(session, redis, req.book_ids, req.order_id)


@app.post("/commands/books/sell")
async def cmd_sell(
    req: BooksRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    return await commands.mark_books_sold(session, redis, req.book_ids, req.order_id)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/books")
async def query_list_books(
    seller_id: str | None = None,
    status: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_books(session, seller_id=seller_id, status=status)


@app.get("/queries/books/{book_id}")
async def query_get_book(book_id: str, session: AsyncSession = Depends(get_session)):
    book = await queries.get_book(session, book_id)
    if not book:
        raise NotFoundError(f"Book {book_id} not found")
    return book


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
