"""
Order Service - クエリハンドラ (CQRS の Read 側)

スイープ・リマインダー・リコンシリエーションが使う検索もここに置く。
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import COMPENSATION_STATES, OrderAggregate, OrderStatus
from .schema import orders, profiles, refunds


async def get_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return OrderAggregate(row)


async def list_orders(
    session: AsyncSession,
    buyer_id: str | None = None,
    seller_id: str | None = None,
    status: str | None = None,
) -> list[OrderAggregate]:
    query = select(orders).order_by(orders.c.created_at.desc())
    if buyer_id is not None:
        query = query.where(orders.c.buyer_id == buyer_id)
    if seller_id is not None:
        query = query.where(orders.c.seller_id == seller_id)
    if status is not None:
        query = query.where(orders.c.status == status)
    result = await session.execute(query)
    return [OrderAggregate(row) for row in result.fetchall()]


async def find_expired(session: AsyncSession, now: datetime) -> list[OrderAggregate]:
    """期限を過ぎてもまだ pending_commit の注文 (期限の古い順)"""
    result = await session.execute(
        select(orders)
        .where(
            orders.c.status == OrderStatus.PENDING_COMMIT.value,
            orders.c.commit_deadline < now,
        )
        .order_by(orders.c.commit_deadline.asc())
    )
    return [OrderAggregate(row) for row in result.fetchall()]


async def find_reminders_due(
    session: AsyncSession,
    now: datetime,
    created_before: datetime,
) -> list[OrderAggregate]:
    """作成から一定時間が経ち、期限前で、リマインダー未送信の pending_commit 注文"""
    result = await session.execute(
        select(orders)
        .where(
            orders.c.status == OrderStatus.PENDING_COMMIT.value,
            orders.c.created_at <= created_before,
            orders.c.commit_deadline > now,
            orders.c.reminder_sent_at.is_(None),
        )
        .order_by(orders.c.commit_deadline.asc())
    )
    return [OrderAggregate(row) for row in result.fetchall()]


async def find_uncompensated(session: AsyncSession) -> list[OrderAggregate]:
    """失敗状態に遷移したのに補償が記録されていない注文"""
    result = await session.execute(
        select(orders)
        .where(
            orders.c.status.in_([s.value for s in COMPENSATION_STATES]),
            orders.c.compensated_at.is_(None),
        )
        .order_by(orders.c.updated_at.asc())
    )
    return [OrderAggregate(row) for row in result.fetchall()]


# ── 返金 ─────────────────────────────────────────


def _refund_to_dict(row) -> dict:
    return {
        "id": row.id,
        "idempotency_key": row.idempotency_key,
        "order_id": row.order_id,
        "payment_reference": row.payment_reference,
        "amount": float(row.amount),
        "reason": row.reason,
        "status": row.status,
        "gateway_reference": row.gateway_reference,
        "attempts": row.attempts,
        "last_error": row.last_error,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


async def get_refund(session: AsyncSession, refund_id: str) -> dict | None:
    result = await session.execute(select(refunds).where(refunds.c.id == refund_id))
    row = result.fetchone()
    return _refund_to_dict(row) if row else None


async def get_refund_by_key(session: AsyncSession, idempotency_key: str) -> dict | None:
    result = await session.execute(
        select(refunds).where(refunds.c.idempotency_key == idempotency_key)
    )
    row = result.fetchone()
    return _refund_to_dict(row) if row else None


async def list_refunds(
    session: AsyncSession,
    statuses: list[str] | None = None,
    order_id: str | None = None,
) -> list[dict]:
    query = select(refunds).order_by(refunds.c.created_at.asc())
    if statuses:
        query = query.where(refunds.c.status.in_(statuses))
    if order_id is not None:
        query = query.where(refunds.c.order_id == order_id)
    result = await session.execute(query)
    return [_refund_to_dict(row) for row in result.fetchall()]


# ── プロフィール ─────────────────────────────────


async def get_profile(session: AsyncSession, profile_id: str) -> dict | None:
    result = await session.execute(select(profiles).where(profiles.c.id == profile_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "name": row.name,
        "email": row.email,
        "pickup_address": row.pickup_address,
    }
