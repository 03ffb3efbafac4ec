"""
Inventory Service - コマンドハンドラ (CQRS Write 側)

本の確保(Reserve)・解放(Release)・売却(Sell)を処理する。

二重販売を防ぐ仕組みは「条件付き UPDATE + 影響行の確認」だけ:
  UPDATE books SET status = 'reserved' WHERE id IN (...) AND status = 'available'
  RETURNING id
同時に複数の購入者が同じ本を確保しようとしても、行の更新はアトミックなので
RETURNING に現れるのは勝者だけになる。プロセス内ロックは使わない。
"""

import json
import logging
import math
from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import utcnow
from ..errors import ConflictError, ValidationError
from .schema import AVAILABLE, RESERVED, SOLD, books

logger = logging.getLogger(__name__)


def _unique(book_ids: list[str]) -> list[str]:
    return list(dict.fromkeys(book_ids))


async def add_book(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_id: str,
    seller_id: str,
    title: str,
    price: float,
    author: str = "",
    condition: str = "",
    weight_kg: float = 0.5,
    now: datetime | None = None,
) -> dict:
    """出品コマンド。本を available 状態で登録する。"""
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("price must be positive", [{"field": "price"}])
    now = now or utcnow()
    data = {
        "id": book_id,
        "seller_id": seller_id,
        "title": title,
        "author": author,
        "condition": condition,
        "price": price,
        "weight_kg": weight_kg,
        "status": AVAILABLE,
        "updated_at": now,
    }
    try:
        await session.execute(insert(books).values(**data))
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError(f"Book {book_id} is already listed")

    await _publish(redis, "BookListed", {"book_id": book_id, "seller_id": seller_id})
    return data


async def reserve_books(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_ids: list[str],
    buyer_id: str,
    order_id: str,
    now: datetime | None = None,
) -> dict:
    """
    本の確保コマンド

    available の行だけを reserved に切り替え、確保できた ID を返す。
    要求より少なければ呼び出し側が部分失敗として扱う。
    確保した行には注文 ID を記録し、以降の解放・売却はその注文からだけ受け付ける。
    """
    requested = _unique(book_ids)
    if not requested:
        return {"claimed": [], "unavailable": []}
    now = now or utcnow()

    result = await session.execute(
        update(books)
        .where(books.c.id.in_(requested), books.c.status == AVAILABLE)
        .values(
            status=RESERVED,
            reserved_by=buyer_id,
            reserved_for=order_id,
            reserved_at=now,
            updated_at=now,
        )
        .returning(books.c.id)
    )
    won = {row.id for row in result.fetchall()}
    await session.commit()

    claimed = [b for b in requested if b in won]
    unavailable = [b for b in requested if b not in won]

    event_data = {
        "buyer_id": buyer_id,
        "order_id": order_id,
        "claimed": claimed,
        "unavailable": unavailable,
        "timestamp": now.isoformat(),
    }
    if claimed:
        await _publish(redis, "BooksReserved", event_data)
    if unavailable:
        await _publish(redis, "BookReservationFailed", event_data)

    return {"claimed": claimed, "unavailable": unavailable}


async def release_books(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_ids: list[str],
    order_id: str,
    now: datetime | None = None,
) -> dict:
    """
    本の解放コマンド（Saga の補償トランザクション）

    その注文が確保・購入した行だけを available に戻す。
    既に戻っている行や、別の注文が確保し直した行は条件に合わないので、
    何度呼んでも結果は同じ。
    """
    requested = _unique(book_ids)
    if not requested:
        return {"released": []}
    now = now or utcnow()

    result = await session.execute(
        update(books)
        .where(
            books.c.id.in_(requested),
            books.c.reserved_for == order_id,
            books.c.status.in_([RESERVED, SOLD]),
        )
        .values(
            status=AVAILABLE,
            reserved_by=None,
            reserved_for=None,
            reserved_at=None,
            sold_at=None,
            updated_at=now,
        )
        .returning(books.c.id)
    )
    done = {row.id for row in result.fetchall()}
    await session.commit()

    released = [b for b in requested if b in done]
    if released:
        await _publish(
            redis,
            "BooksReleased",
            {"order_id": order_id, "released": released, "timestamp": now.isoformat()},
        )
    return {"released": released}


async def mark_books_sold(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_ids: list[str],
    order_id: str,
    now: datetime | None = None,
) -> dict:
    """出品者のコミット後、reserved → sold に進める。"""
    requested = _unique(book_ids)
    if not requested:
        return {"sold": []}
    now = now or utcnow()

    result = await session.execute(
        update(books)
        .where(
            books.c.id.in_(requested),
            books.c.reserved_for == order_id,
            books.c.status == RESERVED,
        )
        .values(status=SOLD, sold_at=now, updated_at=now)
        .returning(books.c.id)
    )
    done = {row.id for row in result.fetchall()}
    await session.commit()

    sold = [b for b in requested if b in done]
    if sold:
        await _publish(
            redis,
            "BooksSold",
            {"order_id": order_id, "sold": sold, "timestamp": now.isoformat()},
        )
    return {"sold": sold}


async def _publish(redis: aioredis.Redis, event_type: str, data: dict) -> None:
    # 書き込みはコミット済み。発行の失敗でコマンドを失敗扱いにしない
    try:
        await redis.publish(
            "inventory_events",
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError as e:
        logger.warning("Failed to publish %s: %s", event_type, e)
