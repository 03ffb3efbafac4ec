"""
Saga Service - 内部サービスクライアント

Order Service / Inventory Service を httpx で呼び出す。
エラーレスポンスは共通のボディ形式から同じ例外型に復元するので、
Order Service で起きた ConflictError は Saga でも ConflictError として扱える。
通信そのものの失敗は CollaboratorFailure になる。
"""

from datetime import datetime, timezone
from uuid import uuid4

import httpx

from ..config import INVENTORY_SERVICE_URL, ORDER_SERVICE_URL, SERVICE_TIMEOUT_SECONDS
from ..errors import CollaboratorFailure, NotFoundError, from_response_body


def _utc_param(value: datetime) -> str:
    # クエリ文字列で "+" が空白に化けないよう Z 表記にする
    return value.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


class ServiceClient:
    name = "service"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        timeout: float = SERVICE_TIMEOUT_SECONDS,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(self, method: str, path: str, **kwargs):
        try:
            resp = await self.http.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
        except httpx.HTTPError as e:
            raise CollaboratorFailure(self.name, f"{method} {path} failed: {e}") from e

        if resp.is_error:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            raise from_response_body(body, resp.status_code)
        return resp.json()


class OrderServiceClient(ServiceClient):
    name = "order-service"

    def __init__(self, http: httpx.AsyncClient, base_url: str = ORDER_SERVICE_URL, **kwargs):
        super().__init__(http, base_url, **kwargs)

    @staticmethod
    def new_order_id() -> str:
        return f"ORD_{uuid4().hex}"

    async def create_order(
        self,
        order_id: str,
        seller_id: str,
        items: list[dict],
        buyer_id: str,
        payment_reference: str | None,
        shipping_address: dict | None,
    ) -> dict:
        return await self._request(
            "POST",
            "/commands/orders",
            json={
                "order_id": order_id,
                "seller_id": seller_id,
                "items": items,
                "buyer_id": buyer_id,
                "payment_reference": payment_reference,
                "shipping_address": shipping_address,
            },
        )

    async def get_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/queries/orders/{order_id}")

    async def transition(
        self,
        order_id: str,
        expected_status: str,
        new_status: str,
        reason: str | None = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/commands/orders/{order_id}/transition",
            json={
                "expected_status": expected_status,
                "new_status": new_status,
                "reason": reason,
            },
        )

    async def set_delivery_status(
        self,
        order_id: str,
        delivery_status: str,
        tracking_reference: str | None = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/commands/orders/{order_id}/delivery",
            json={"delivery_status": delivery_status, "tracking_reference": tracking_reference},
        )

    async def mark_compensated(self, order_id: str) -> dict:
        return await self._request("POST", f"/commands/orders/{order_id}/compensated")

    async def mark_reminder_sent(self, order_id: str) -> dict:
        return await self._request("POST", f"/commands/orders/{order_id}/reminder-sent")

    async def find_expired(self, now: datetime) -> list[dict]:
        return await self._request(
            "GET", "/queries/orders/expired", params={"now": _utc_param(now)}
        )

    async def find_reminders_due(self, now: datetime, after_hours: float) -> list[dict]:
        return await self._request(
            "GET",
            "/queries/orders/reminders-due",
            params={"now": _utc_param(now), "after_hours": after_hours},
        )

    async def find_uncompensated(self) -> list[dict]:
        return await self._request("GET", "/queries/orders/uncompensated")

    async def ensure_refund(
        self,
        idempotency_key: str,
        order_id: str | None,
        payment_reference: str,
        amount: float,
        reason: str,
    ) -> dict:
        return await self._request(
            "POST",
            "/commands/refunds",
            json={
                "idempotency_key": idempotency_key,
                "order_id": order_id,
                "payment_reference": payment_reference,
                "amount": amount,
                "reason": reason,
            },
        )

    async def begin_refund_attempt(self, refund_id: str, expected_attempts: int) -> dict:
        return await self._request(
            "POST",
            f"/commands/refunds/{refund_id}/attempt",
            json={"expected_attempts": expected_attempts},
        )

    async def record_refund_result(
        self,
        refund_id: str,
        status: str,
        gateway_reference: str | None = None,
        error: str | None = None,
    ) -> dict:
        return await self._request(
            "POST",
            f"/commands/refunds/{refund_id}/result",
            json={"status": status, "gateway_reference": gateway_reference, "error": error},
        )

    async def list_refunds(
        self,
        statuses: list[str] | None = None,
        order_id: str | None = None,
    ) -> list[dict]:
        params = {}
        if statuses:
            params["status"] = statuses
        if order_id is not None:
            params["order_id"] = order_id
        return await self._request("GET", "/queries/refunds", params=params)

    async def list_orders(self, status: str) -> list[dict]:
        return await self._request("GET", "/queries/orders", params={"status": status})

    async def get_profile(self, profile_id: str) -> dict | None:
        try:
            return await self._request("GET", f"/queries/profiles/{profile_id}")
        except NotFoundError:
            return None


class InventoryServiceClient(ServiceClient):
    name = "inventory-service"

    def __init__(self, http: httpx.AsyncClient, base_url: str = INVENTORY_SERVICE_URL, **kwargs):
        super().__init__(http, base_url, **kwargs)

    async def reserve(self, book_ids: list[str], buyer_id: str, order_id: str) -> dict:
        return await self._request(
            "POST",
            "/commands/books/reserve",
            json={"book_ids": book_ids, "buyer_id": buyer_id, "order_id": order_id},
        )

    async def release(self, book_ids: list[str], order_id: str) -> dict:
        return await self._request(
            "POST", "/commands/books/release", json={"book_ids": book_ids, "order_id": order_id}
        )

    async def mark_sold(self, book_ids: list[str], order_id: str) -> dict:
        return await self._request(
            "POST", "/commands/books/sell", json={"book_ids": book_ids, "order_id": order_id}
        )

    async def list_reserved(self) -> list[dict]:
        return await self._request("GET", "/queries/books", params={"status": "reserved"})
