"""
Order Service - コマンドハンドラ (CQRS の Write 側)

注文の作成と状態遷移、返金記録の管理を行う。

状態遷移はすべて「期待する現在状態」付きの UPDATE 1 文で行う (楽観的並行制御):
  UPDATE orders SET status = :new ... WHERE id = :id AND status = :expected
コミットと期限切れスイープが同時に走っても、行を更新できるのは片方だけ。
負けた側は ConflictError を受け取り、業務処理をリトライせずに何もしない。

注文の変更は必ず order_events への追記と同じトランザクションでコミットし、
コミット後に Redis Pub/Sub でイベントを発行する。
"""

import json
import logging
from datetime import datetime, timedelta
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import COMMIT_WINDOW_HOURS
from ..db import utcnow
from ..errors import ConflictError, NotFoundError, SellerNotFound, ValidationError
from . import event_store, queries
from .aggregate import (
    EVENT_TYPES,
    TIMESTAMP_COLUMNS,
    OrderAggregate,
    OrderStatus,
    check_transition,
)
from .events import OrderCreated, OrderDeliveryUpdated, OrderStatusChanged, RefundRecorded
from .schema import orders, profiles, refunds

logger = logging.getLogger(__name__)

DELIVERY_STATUSES = ("not_requested", "scheduled", "manual_required")
REFUND_PENDING = "pending"
REFUND_COMPLETED = "completed"
REFUND_FAILED = "failed"


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    seller_id: str,
    items: list[dict],
    buyer_id: str,
    payment_reference: str | None,
    shipping_address: dict | None,
    order_id: str | None = None,
    now: datetime | None = None,
    commit_window: timedelta = timedelta(hours=COMMIT_WINDOW_HOURS),
) -> OrderAggregate:
    """
    注文作成コマンド

    1. 出品者のプロフィールを確認 (なければ SellerNotFound)
    2. 明細の価格合計から total_amount を計算
    3. pending_commit で INSERT し、commit_deadline = now + 48h
    4. OrderCreated を履歴に追記してコミット
    5. Redis Pub/Sub でイベントを発行
    """
    if not items:
        raise ValidationError("Order must contain at least one item")
    foreign = [i for i, item in enumerate(items) if item.get("seller_id") != seller_id]
    if foreign:
        raise ValidationError(
            "All items must belong to the order's seller",
            [{"index": i, "field": "seller_id"} for i in foreign],
        )

    profile = await queries.get_profile(session, seller_id)
    if profile is None:
        raise SellerNotFound(f"Seller {seller_id} not found")

    now = now or utcnow()
    order_id = order_id or f"ORD_{uuid4().hex}"
    total = round(sum(float(item["price"]) for item in items), 2)
    deadline = now + commit_window

    try:
        await session.execute(
            insert(orders).values(
                id=order_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                items=items,
                total_amount=total,
                payment_reference=payment_reference,
                shipping_address=shipping_address,
                status=OrderStatus.PENDING_COMMIT.value,
                version=1,
                commit_deadline=deadline,
                delivery_status="not_requested",
                created_at=now,
                updated_at=now,
            )
        )
        event = OrderCreated(
            order_id=order_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            book_ids=[item["book_id"] for item in items],
            total_amount=total,
            commit_deadline=deadline,
            timestamp=now,
        )
        await event_store.append_event(
            session, order_id, "OrderCreated", event.model_dump(mode="json"), 1, now
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError(f"Order {order_id} already exists")

    await _publish(redis, "OrderCreated", event)

    return await queries.get_order(session, order_id)


async def transition(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    expected_status: OrderStatus,
    new_status: OrderStatus,
    reason: str | None = None,
    now: datetime | None = None,
) -> OrderAggregate:
    """
    ガード付き状態遷移コマンド

    現在の状態が expected_status のときだけ new_status に進める。
    更新行が 0 件なら、注文がなければ NotFoundError、あれば ConflictError。
    """
    check_transition(expected_status, new_status)
    now = now or utcnow()

    values = {TIMESTAMP_COLUMNS[new_status]: now}
    if reason is not None:
        values["cancellation_reason"] = reason

    event = OrderStatusChanged(
        order_id=order_id,
        from_status=expected_status.value,
        to_status=new_status.value,
        reason=reason,
        timestamp=now,
    )
    agg = await _apply(
        session,
        order_id,
        [orders.c.status == expected_status.value],
        {"status": new_status.value, **values},
        EVENT_TYPES[new_status],
        event,
        now,
        conflict=f"Order {order_id} is no longer {expected_status.value}",
    )
    await _publish(redis, EVENT_TYPES[new_status], event)
    return agg


async def set_delivery_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    delivery_status: str,
    tracking_reference: str | None = None,
    now: datetime | None = None,
) -> OrderAggregate:
    """配送手配の結果を記録する。状態遷移ではないので status は変えない。"""
    if delivery_status not in DELIVERY_STATUSES:
        raise ValidationError(
            f"Unknown delivery status {delivery_status}",
            [{"field": "delivery_status"}],
        )
    now = now or utcnow()
    event = OrderDeliveryUpdated(
        order_id=order_id,
        delivery_status=delivery_status,
        tracking_reference=tracking_reference,
        timestamp=now,
    )
    agg = await _apply(
        session,
        order_id,
        [],
        {"delivery_status": delivery_status, "tracking_reference": tracking_reference},
        "OrderDeliveryUpdated",
        event,
        now,
    )
    await _publish(redis, "OrderDeliveryUpdated", event)
    return agg


async def mark_compensated(
    session: AsyncSession,
    order_id: str,
    now: datetime | None = None,
) -> OrderAggregate:
    """
    補償 (在庫解放と返金の起票) が済んだことを記録する。
    既に記録済みなら何もせず現在の注文を返す。
    """
    now = now or utcnow()
    try:
        return await _apply(
            session,
            order_id,
            [orders.c.compensated_at.is_(None)],
            {"compensated_at": now},
            "OrderCompensated",
            {"order_id": order_id, "timestamp": now.isoformat()},
            now,
        )
    except ConflictError:
        return await queries.get_order(session, order_id)


async def mark_reminder_sent(
    session: AsyncSession,
    order_id: str,
    now: datetime | None = None,
) -> OrderAggregate:
    """リマインダー送信済みにする。既に送信済み、またはコミット待ちでなければ ConflictError。"""
    now = now or utcnow()
    return await _apply(
        session,
        order_id,
        [
            orders.c.reminder_sent_at.is_(None),
            orders.c.status == OrderStatus.PENDING_COMMIT.value,
        ],
        {"reminder_sent_at": now},
        "OrderReminderSent",
        {"order_id": order_id, "timestamp": now.isoformat()},
        now,
        conflict=f"Reminder for order {order_id} was already sent",
    )


async def _apply(
    session: AsyncSession,
    order_id: str,
    guards: list,
    values: dict,
    event_type: str,
    event: BaseModel | dict,
    now: datetime,
    conflict: str | None = None,
) -> OrderAggregate:
    """
    注文 1 行への条件付き UPDATE と履歴の追記を 1 トランザクションで行う。
    version は変更のたびに 1 つ進み、履歴のバージョンと一致する。
    """
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, *guards)
        .values(version=orders.c.version + 1, updated_at=now, **values)
        .returning(*orders.c)
    )
    row = result.fetchone()
    if row is None:
        await session.rollback()
        if await queries.get_order(session, order_id) is None:
            raise NotFoundError(f"Order {order_id} not found")
        raise ConflictError(conflict or f"Order {order_id} was modified concurrently")

    data = event.model_dump(mode="json") if isinstance(event, BaseModel) else event
    await event_store.append_event(session, order_id, event_type, data, row.version, now)
    await session.commit()
    return OrderAggregate(row)


# ── 返金記録 ──────────────────────────────────────


async def ensure_refund(
    session: AsyncSession,
    redis: aioredis.Redis,
    idempotency_key: str,
    order_id: str | None,
    payment_reference: str,
    amount: float,
    reason: str,
    now: datetime | None = None,
) -> dict:
    """
    返金記録を起票する。同じ idempotency_key の記録があればそれを返す。

    idempotency_key の UNIQUE 制約で二重起票を防ぐ。
    INSERT の競合に負けた場合は勝者の記録を読み直して返す。
    """
    existing = await queries.get_refund_by_key(session, idempotency_key)
    if existing is not None:
        return existing

    now = now or utcnow()
    refund_id = f"RF_{uuid4().hex}"
    try:
        await session.execute(
            insert(refunds).values(
                id=refund_id,
                idempotency_key=idempotency_key,
                order_id=order_id,
                payment_reference=payment_reference,
                amount=round(amount, 2),
                reason=reason,
                status=REFUND_PENDING,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return await queries.get_refund_by_key(session, idempotency_key)

    await _publish(
        redis,
        "RefundRequested",
        RefundRecorded(
            refund_id=refund_id,
            order_id=order_id,
            amount=round(amount, 2),
            status=REFUND_PENDING,
            timestamp=now,
        ),
    )
    return await queries.get_refund(session, refund_id)


async def begin_refund_attempt(
    session: AsyncSession,
    refund_id: str,
    expected_attempts: int,
    now: datetime | None = None,
) -> dict:
    """
    返金試行を確保する (楽観的ロック)。

    attempts が expected_attempts のままで、かつ completed でないときだけ 1 進める。
    複数のワーカーが同じ試行でゲートウェイを呼ぶことはない。
    """
    now = now or utcnow()
    result = await session.execute(
        update(refunds)
        .where(
            refunds.c.id == refund_id,
            refunds.c.attempts == expected_attempts,
            refunds.c.status != REFUND_COMPLETED,
        )
        .values(attempts=refunds.c.attempts + 1, updated_at=now)
        .returning(refunds.c.id)
    )
    claimed = result.fetchone()
    if claimed is None:
        await session.rollback()
        if await queries.get_refund(session, refund_id) is None:
            raise NotFoundError(f"Refund {refund_id} not found")
        raise ConflictError(f"Refund {refund_id} attempt was already claimed")
    await session.commit()
    return await queries.get_refund(session, refund_id)


async def record_refund_result(
    session: AsyncSession,
    redis: aioredis.Redis,
    refund_id: str,
    status: str,
    gateway_reference: str | None = None,
    error: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    ゲートウェイの結果を記録する。completed の記録は二度と変更しない。
    completed になった場合は注文の refunded_at も同じトランザクションで記録する。
    """
    if status not in (REFUND_COMPLETED, REFUND_FAILED):
        raise ValidationError(f"Unknown refund status {status}", [{"field": "status"}])
    now = now or utcnow()

    values = {"status": status, "updated_at": now, "last_error": error}
    if status == REFUND_COMPLETED:
        values.update(gateway_reference=gateway_reference, completed_at=now, last_error=None)

    result = await session.execute(
        update(refunds)
        .where(refunds.c.id == refund_id, refunds.c.status != REFUND_COMPLETED)
        .values(**values)
        .returning(refunds.c.order_id, refunds.c.amount)
    )
    row = result.fetchone()
    if row is None:
        await session.rollback()
        if await queries.get_refund(session, refund_id) is None:
            raise NotFoundError(f"Refund {refund_id} not found")
        raise ConflictError(f"Refund {refund_id} is already completed")

    if status == REFUND_COMPLETED and row.order_id is not None:
        await session.execute(
            update(orders)
            .where(orders.c.id == row.order_id, orders.c.refunded_at.is_(None))
            .values(refunded_at=now, updated_at=now)
        )
    await session.commit()

    await _publish(
        redis,
        "RefundCompleted" if status == REFUND_COMPLETED else "RefundFailed",
        RefundRecorded(
            refund_id=refund_id,
            order_id=row.order_id,
            amount=float(row.amount),
            status=status,
            timestamp=now,
        ),
    )
    return await queries.get_refund(session, refund_id)


# ── プロフィール ─────────────────────────────────


async def upsert_profile(
    session: AsyncSession,
    profile_id: str,
    name: str,
    email: str,
    pickup_address: dict | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    values = {
        "name": name,
        "email": email,
        "pickup_address": pickup_address,
        "updated_at": now,
    }
    exists = await session.execute(select(profiles.c.id).where(profiles.c.id == profile_id))
    if exists.fetchone():
        await session.execute(update(profiles).where(profiles.c.id == profile_id).values(**values))
    else:
        await session.execute(insert(profiles).values(id=profile_id, **values))
    await session.commit()
    return await queries.get_profile(session, profile_id)


async def _publish(redis: aioredis.Redis, event_type: str, event: BaseModel) -> None:
    # 状態遷移はコミット済み。発行の失敗でコマンドを失敗扱いにしない
    try:
        await redis.publish(
            "order_events",
            json.dumps({"event_type": event_type, "data": event.model_dump(mode="json")}),
        )
    except RedisError as e:
        logger.warning("Failed to publish %s: %s", event_type, e)
