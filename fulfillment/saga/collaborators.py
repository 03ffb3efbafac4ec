"""
Saga Service - 外部コラボレーター

配送手配・通知・返金ゲートウェイ。どれも状態遷移が確定した後に呼ばれ、
失敗は CollaboratorFailure として呼び出し側に返すだけで、注文の状態は巻き戻さない。

Saga は「呼ばれなかった」と「呼んだが応答が失われた」を区別しないので、
受信側は注文 ID (冪等キー) で重複を除く前提で、少なくとも 1 回呼ぶ。
"""

import asyncio
import json
import logging

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import (
    COLLABORATOR_TIMEOUT_SECONDS,
    DELIVERY_SERVICE_URL,
    NOTIFICATION_QUEUE,
    PAYMENT_CURRENCY,
    PAYSTACK_BASE_URL,
    PAYSTACK_SECRET_KEY,
)
from ..db import utcnow
from ..errors import CollaboratorFailure

logger = logging.getLogger(__name__)


class DeliveryTrigger:
    """コミット後の集荷手配 (ベストエフォート)"""

    name = "delivery"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = DELIVERY_SERVICE_URL,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def trigger(
        self,
        order_id: str,
        pickup_address: dict | None,
        delivery_address: dict | None,
        total_weight: float,
    ) -> dict:
        try:
            resp = await self.http.post(
                f"{self.base_url}/automate-delivery",
                json={
                    "order_id": order_id,
                    "trigger": "order_committed",
                    "pickup_address": pickup_address,
                    "delivery_address": delivery_address,
                    "total_weight": total_weight,
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise CollaboratorFailure(self.name, f"Delivery automation failed: {e}") from e
        except ValueError as e:
            raise CollaboratorFailure(self.name, "Delivery automation returned invalid JSON") from e

        if not body.get("success"):
            raise CollaboratorFailure(
                self.name, body.get("error") or "Delivery automation was not successful"
            )
        return body


class NotificationDispatcher:
    """購入者・出品者向けメッセージを Redis のリストに積む"""

    name = "notification"

    def __init__(
        self,
        redis: aioredis.Redis,
        queue: str = NOTIFICATION_QUEUE,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
    ) -> None:
        self.redis = redis
        self.queue = queue
        self.timeout = timeout

    async def enqueue(
        self,
        recipient_id: str,
        template: str,
        data: dict,
        idempotency_key: str,
    ) -> None:
        message = json.dumps(
            {
                "idempotency_key": idempotency_key,
                "recipient_id": recipient_id,
                "template": template,
                "data": data,
                "enqueued_at": utcnow().isoformat(),
            },
            default=str,
        )
        try:
            await asyncio.wait_for(self.redis.rpush(self.queue, message), self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise CollaboratorFailure(self.name, f"Failed to enqueue {template}: {e}") from e


class PaymentGateway:
    """Paystack の返金 API"""

    name = "payment"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = PAYSTACK_BASE_URL,
        secret_key: str = PAYSTACK_SECRET_KEY,
        currency: str = PAYMENT_CURRENCY,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.currency = currency
        self.timeout = timeout

    async def refund(
        self,
        payment_reference: str,
        amount: float,
        reason: str,
        refund_id: str,
    ) -> str:
        """返金を依頼し、ゲートウェイ側の参照 ID を返す。"""
        if not self.secret_key:
            raise CollaboratorFailure(self.name, "Paystack secret key not configured")

        try:
            resp = await self.http.post(
                f"{self.base_url}/refund",
                headers={"Authorization": f"Bearer {self.secret_key}"},
                json={
                    "transaction": payment_reference,
                    # 最小通貨単位 (セント) で送る
                    "amount": int(round(amount * 100)),
                    "currency": self.currency,
                    "customer_note": reason,
                    "merchant_note": f"Refund {refund_id} for transaction {payment_reference}",
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise CollaboratorFailure(self.name, f"Refund request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.is_error or not body.get("status"):
            raise CollaboratorFailure(
                self.name,
                body.get("message") or f"Refund rejected with HTTP {resp.status_code}",
            )

        data = body.get("data") or {}
        reference = data.get("id") or data.get("reference")
        logger.info("Refund accepted by gateway: refund=%s reference=%s", refund_id, reference)
        return str(reference) if reference is not None else refund_id
