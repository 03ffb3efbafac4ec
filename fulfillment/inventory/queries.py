"""
Inventory Service - クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import books


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "seller_id": row.seller_id,
        "title": row.title,
        "author": row.author,
        "condition": row.condition,
        "price": float(row.price),
        "weight_kg": row.weight_kg,
        "status": row.status,
        "reserved_by": row.reserved_by,
        "reserved_for": row.reserved_for,
        "reserved_at": row.reserved_at.isoformat() if row.reserved_at else None,
        "sold_at": row.sold_at.isoformat() if row.sold_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_book(session: AsyncSession, book_id: str) -> dict | None:
    result = await session.execute(select(books).where(books.c.id == book_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_books(
    session: AsyncSession,
    seller_id: str | None = None,
    status: str | None = None,
) -> list[dict]:
    query = select(books).order_by(books.c.title)
    if seller_id is not None:
        query = query.where(books.c.seller_id == seller_id)
    if status is not None:
        query = query.where(books.c.status == status)
    result = await session.execute(query)
    return [_to_dict(row) for row in result.fetchall()]
