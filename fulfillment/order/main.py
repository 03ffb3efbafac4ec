"""
Order Service - FastAPI エントリーポイント

CQRS パターンに従い、Command (POST/PUT) と Query (GET) のエンドポイントを分離。
注文の状態遷移はすべてガード付きで、競合は 409 (conflict) で返す。
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ORDER_DATABASE_URL, REDIS_URL, REMINDER_AFTER_HOURS, configure_logging
from ..db import create_session_factory, init_schema, utcnow
from ..errors import NotFoundError, install_error_handler
from . import commands, event_store, queries
from .aggregate import OrderStatus
from .schema import metadata

engine, async_session = create_session_factory(ORDER_DATABASE_URL)
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


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handler(app)


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Request / Response Models ────────────────────


class CreateOrderRequest(BaseModel):
    order_id: str | None = None
    buyer_id: str
    seller_id: str
    items: list[dict]
    payment_reference: str | None = None
    shipping_address: dict | None = None


class TransitionRequest(BaseModel):
    expected_status: OrderStatus
    new_status: OrderStatus
    reason: str | None = None


class DeliveryRequest(BaseModel):
    delivery_status: str
    tracking_reference: str | None = None


class EnsureRefundRequest(BaseModel):
    idempotency_key: str
    order_id: str | None = None
    payment_reference: str
    amount: float
    reason: str


class RefundAttemptRequest(BaseModel):
    expected_attempts: int


class RefundResultRequest(BaseModel):
    status: str
    gateway_reference: str | None = None
    error: str | None = None


class ProfileRequest(BaseModel):
    name: str
    email: str
    pickup_address: dict | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """注文作成コマンド（Saga から出品者ごとに呼ばれる）"""
    agg = await commands.create_order(
        session,
        redis,
        req.seller_id,
        req.items,
        req.buyer_id,
        req.payment_reference,
        req.shipping_address,
        order_id=req.order_id,
    )
    return agg.to_dict()


@app.post("/commands/orders/{order_id}/transition")
async def cmd_transition(
    order_id: str,
    req: TransitionRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """ガード付き状態遷移コマンド"""
    agg = await commands.transition(
        session, redis, order_id, req.expected_status, req.new_status, reason=req.reason
    )
    return agg.to_dict()


@app.post("/commands/orders/{order_id}/delivery")
async def cmd_set_delivery(
    order_id: str,
    req: DeliveryRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    agg = await commands.set_delivery_status(
        session, redis, order_id, req.delivery_status, req.tracking_reference
    )
    return agg.to_dict()


@app.post("/commands/orders/{order_id}/compensated")
async def cmd_mark_compensated(order_id: str, session: AsyncSession = Depends(get_session)):
    agg = await commands.mark_compensated(session, order_id)
    return agg.to_dict()


@app.post("/commands/orders/{order_id}/reminder-sent")
async def cmd_mark_reminder_sent(order_id: str, session: AsyncSession = Depends(get_session)):
    agg = await commands.mark_reminder_sent(session, order_id)
    return agg.to_dict()


@app.post("/commands/refunds")
async def cmd_ensure_refund(
    req: EnsureRefundRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """返金記録の起票（同じキーなら既存の記録を返す）"""
    return await commands.ensure_refund(
        session,
        redis,
        req.idempotency_key,
        req.order_id,
        req.payment_reference,
        req.amount,
        req.reason,
    )


@app.post("/commands/refunds/{refund_id}/attempt")
async def cmd_begin_refund_attempt(
    refund_id: str,
    req: RefundAttemptRequest,
    session: AsyncSession = Depends(get_session),
):
    return await commands.begin_refund_attempt(session, refund_id, req.expected_attempts)


@app.post("/commands/refunds/{refund_id}/result")
async def cmd_record_refund_result(
    refund_id: str,
    req: RefundResultRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    return await commands.record_refund_result(
        session, redis, refund_id, req.status, req.gateway_reference, req.error
    )


@app.put("/commands/profiles/{profile_id}")
async def cmd_upsert_profile(
    profile_id: str,
    req: ProfileRequest,
    session: AsyncSession = Depends(get_session),
):
    return await commands.upsert_profile(
        session, profile_id, req.name, req.email, req.pickup_address
    )


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(
    buyer_id: str | None = None,
    seller_id: str | None = None,
    status: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    found = await queries.list_orders(session, buyer_id, seller_id, status)
    return [agg.to_dict() for agg in found]


@app.get("/queries/orders/expired")
async def query_expired_orders(
    now: datetime | None = None,
    session: AsyncSession = Depends(get_session),
):
    """期限切れスイープ用"""
    found = await queries.find_expired(session, _aware(now))
    return [agg.to_dict() for agg in found]


@app.get("/queries/orders/reminders-due")
async def query_reminders_due(
    now: datetime | None = None,
    after_hours: float = REMINDER_AFTER_HOURS,
    session: AsyncSession = Depends(get_session),
):
    now = _aware(now)
    found = await queries.find_reminders_due(session, now, now - timedelta(hours=after_hours))
    return [agg.to_dict() for agg in found]


@app.get("/queries/orders/uncompensated")
async def query_uncompensated(session: AsyncSession = Depends(get_session)):
    found = await queries.find_uncompensated(session)
    return [agg.to_dict() for agg in found]


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, session: AsyncSession = Depends(get_session)):
    agg = await queries.get_order(session, order_id)
    if not agg:
        raise NotFoundError(f"Order {order_id} not found")
    return agg.to_dict()


@app.get("/queries/refunds")
async def query_list_refunds(
    status: list[str] | None = Query(default=None),
    order_id: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_refunds(session, statuses=status, order_id=order_id)


@app.get("/queries/profiles/{profile_id}")
async def query_get_profile(profile_id: str, session: AsyncSession = Depends(get_session)):
    profile = await queries.get_profile(session, profile_id)
    if not profile:
        raise NotFoundError(f"Profile {profile_id} not found")
    return profile


# ── 注文履歴 (監査証跡) ──────────────────────────


@app.get("/events/{order_id}")
async def get_order_events(order_id: str, session: AsyncSession = Depends(get_session)):
    """指定注文の変更履歴を返す"""
    return await event_store.load_events(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
