"""
Saga Service - FastAPI エントリーポイント

Saga オーケストレーターを HTTP API として公開する。
購入者のチェックアウトと出品者のコミットを受け取り、Saga を実行する。
起動時にコミット期限スケジューラをバックグラウンドタスクとして開始する。
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel

from ..config import REDIS_URL, SWEEP_INTERVAL_SECONDS, configure_logging
from ..errors import install_error_handler
from .clients import InventoryServiceClient, OrderServiceClient
from .collaborators import DeliveryTrigger, NotificationDispatcher, PaymentGateway
from .orchestrator import OrderSagaOrchestrator
from .scheduler import DeadlineScheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Redis・HTTP クライアントとオーケストレーターを組み立て、スケジューラを開始する。"""
    configure_logging()
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http = httpx.AsyncClient()
    coordinator = OrderSagaOrchestrator(
        OrderServiceClient(http),
        InventoryServiceClient(http),
        DeliveryTrigger(http),
        NotificationDispatcher(redis_pool),
        PaymentGateway(http),
        redis_pool,
    )
    app.state.coordinator = coordinator

    shutdown_event = asyncio.Event()
    scheduler_task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        scheduler = DeadlineScheduler(coordinator, SWEEP_INTERVAL_SECONDS)
        scheduler_task = asyncio.create_task(scheduler.run(shutdown_event))
    yield
    shutdown_event.set()
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    await http.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)
install_error_handler(app)


def get_coordinator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.coordinator


# ── Request Models ───────────────────────────────


class CheckoutItem(BaseModel):
    # 検証は Cart Splitter がまとめて行うので、ここでは欠けていても受け付ける
    book_id: str | None = None
    seller_id: str | None = None
    price: float | None = None
    title: str | None = None
    author: str | None = None
    condition: str | None = None
    weight_kg: float | None = None


class CheckoutRequest(BaseModel):
    buyer_id: str | None = None
    items: list[CheckoutItem] = []
    shipping_address: dict | None = None
    payment_reference: str | None = None


class CommitRequest(BaseModel):
    seller_id: str


class DeclineRequest(BaseModel):
    seller_id: str
    reason: str | None = None


class CancelRequest(BaseModel):
    reason: str
    requested_by: str | None = None


class RefundRequest(BaseModel):
    reason: str


# ── Saga Endpoints ───────────────────────────────


@app.post("/saga/checkout")
async def checkout(
    req: CheckoutRequest,
    coordinator: OrderSagaOrchestrator = Depends(get_coordinator),
):
    """
    注文 Saga を実行する。

    カートを出品者ごとに分割し、出品者ごとに在庫確保と注文作成を行う。
    1 件も注文を作れなかった場合だけエラーを返す。
    """
    return await coordinator.place_order(
        req.buyer_id,
        [item.model_dump() for item in req.items],
        req.shipping_address,
        req.payment_reference,
    )


@app.post("/saga/orders/{order_id}/commit")
async def commit_order(
    order_id: str,
    req: CommitRequest,
    coordinator: OrderSagaOrchestrator = Depends(get_coordinator),
):
    """出品者のコミット (48 時間以内)"""
    return await coordinator.commit(order_id, req.seller_id)


@app.post("/saga/orders/{order_id}/decline")
async def decline_order(
    order_id: str,
    req: DeclineRequest,
    coordinator: OrderSagaOrchestrator = Depends(get_coordinator),
):
    return await coordinator.decline(order_id, req.seller_id, req.reason)


@app.post("/saga/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    req: CancelRequest,
    coordinator: OrderSagaOrchestrator = Depends(get_coordinator),
):
    return await coordinator.cancel(order_id, req.reason, req.requested_by)


@app.post("/saga/orders/{order_id}/refund")
async def refund_order(
    order_id: str,
    req: RefundRequest,
    coordinator: OrderSagaOrchestrator = Depends(get_coordinator),
):
    return await coordinator.request_refund(order_id, req.reason)


@app.post("/saga/orders/{order_id}/fulfill")
async def fulfill_order(
    order_id: str,
    coordinator: OrderSagaOrchestrator = Depends(get_coordinator),
):
    return await coordinator.fulfill(order_id)


# ── 定期実行 (cron からも呼べる) ─────────────────


@app.post("/saga/sweep")
async def sweep(coordinator: OrderSagaOrchestrator = Depends(get_coordinator)):
    """期限切れの注文を処理する"""
    return await coordinator.sweep()


@app.post("/saga/reminders")
async def reminders(coordinator: OrderSagaOrchestrator = Depends(get_coordinator)):
    return await coordinator.send_reminders()


@app.post("/saga/reconcile")
async def reconcile(coordinator: OrderSagaOrchestrator = Depends(get_coordinator)):
    return await coordinator.reconcile()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "saga-service"}
