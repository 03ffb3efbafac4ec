"""
Saga Orchestrator - 注文フルフィルメント Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが Order Service / Inventory Service へのコマンドと
  外部コラボレーター (配送・通知・返金) の呼び出しを制御する。
  失敗時は補償トランザクション (在庫解放・返金) を実行して整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  注文受付: カートを出品者ごとに分割                            │
  │    出品者ごとに                                                │
  │     1. Inventory Service で本を引き当て                       │
  │        └─ 一部しか取れない → 取れた分を解放 (補償)            │
  │     2. Order Service で pending_commit の注文を作成           │
  │        └─ 失敗 → その出品者の本を解放 (補償)                  │
  │     3. 購入者・出品者に通知                                   │
  │                                                              │
  │  出品者のコミット: committed → 本を sold → 配送手配 → 通知     │
  │  期限切れ / キャンセル / 辞退 / 返金要求:                      │
  │     状態遷移 → 本を解放 → 返金 (決済済みなら) → 通知            │
  └──────────────────────────────────────────────────────────────┘

補償は必ずガード付きの状態遷移に成功した後か、リコンシリエーションが
「失敗状態なのに compensated_at が空」の注文を見つけたときだけ行う。
遷移に負けた側 (ConflictError) は何もしない。
"""

import json
import logging
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import (
    COMMIT_WINDOW_HOURS,
    REFUND_RETRY_AFTER_SECONDS,
    REMINDER_AFTER_HOURS,
    STALE_RESERVATION_SECONDS,
)
from ..db import utcnow
from ..errors import (
    CollaboratorFailure,
    ConflictError,
    FulfillmentError,
    NotFoundError,
    ReservationPartialFailure,
    ValidationError,
)
from .clients import InventoryServiceClient, OrderServiceClient
from .collaborators import DeliveryTrigger, NotificationDispatcher, PaymentGateway
from .splitter import DEFAULT_BOOK_WEIGHT_KG, OrderIntent, split_cart

logger = logging.getLogger(__name__)

EXPIRY_REASON = f"Order expired - seller did not commit within {COMMIT_WINDOW_HOURS} hours"
# 残り時間がこれ以下ならリマインダーを緊急扱いにする
URGENT_REMINDER_HOURS = 12


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SagaLog:
    """ステップごとの実行記録 (step / action / status / timestamp / error)"""

    def __init__(self) -> None:
        self.steps: list[dict] = []

    def begin(self, action: str, **detail) -> dict:
        step = {
            "step": len(self.steps) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": utcnow().isoformat(),
            **detail,
        }
        self.steps.append(step)
        return step

    @staticmethod
    def complete(step: dict, **detail) -> None:
        step["status"] = "COMPLETED"
        step.update(detail)

    @staticmethod
    def fail(step: dict, error: Exception | str) -> None:
        step["status"] = "FAILED"
        step["error"] = str(error)

    @staticmethod
    def skip(step: dict, reason: str) -> None:
        step["status"] = "SKIPPED"
        step["reason"] = reason


class OrderSagaOrchestrator:
    """注文フルフィルメント Saga のオーケストレーター"""

    def __init__(
        self,
        orders: OrderServiceClient,
        inventory: InventoryServiceClient,
        delivery: DeliveryTrigger,
        notifications: NotificationDispatcher,
        payments: PaymentGateway,
        redis: aioredis.Redis,
        refund_retry_after: timedelta = timedelta(seconds=REFUND_RETRY_AFTER_SECONDS),
        stale_reservation_after: timedelta = timedelta(seconds=STALE_RESERVATION_SECONDS),
    ):
        self.orders = orders
        self.inventory = inventory
        self.delivery = delivery
        self.notifications = notifications
        self.payments = payments
        self.redis = redis
        self.refund_retry_after = refund_retry_after
        self.stale_reservation_after = stale_reservation_after

    # ── 注文受付 ────────────────────────────────────

    async def place_order(
        self,
        buyer_id: str,
        items: list[dict],
        shipping_address: dict | None = None,
        payment_reference: str | None = None,
    ) -> dict:
        """
        マルチ出品者のカートから出品者ごとの注文を作る。

        出品者ごとに独立して処理するので、ある出品者の本が取れなくても
        他の出品者の注文は作られる。1 件も作れなかった場合だけ例外を投げる。
        決済済みの場合、注文にならなかった出品者分は返金を起票する。
        """
        intents = split_cart(buyer_id, items, shipping_address)
        log = SagaLog()
        placed: list[dict] = []
        failures: list[dict] = []
        errors: list[FulfillmentError] = []
        warnings: list[str] = []
        failed_intents: list[OrderIntent] = []

        for intent in intents:
            try:
                order = await self._place_for_seller(intent, payment_reference, log)
            except FulfillmentError as e:
                errors.append(e)
                failed_intents.append(intent)
                failure = {
                    "seller_id": intent.seller_id,
                    "book_ids": intent.book_ids,
                    "error": e.code,
                    "detail": e.detail,
                }
                if isinstance(e, ReservationPartialFailure):
                    failure["unavailable_book_ids"] = e.unavailable_book_ids
                failures.append(failure)
                continue

            placed.append(
                {
                    "order_id": order["id"],
                    "seller_id": order["seller_id"],
                    "total_amount": order["total_amount"],
                    "commit_deadline": order["commit_deadline"],
                    "items": order["items"],
                }
            )
            await self._notify(
                order["id"],
                buyer_id,
                "buyer-order-pending",
                {"total_amount": order["total_amount"], "seller_id": order["seller_id"]},
                warnings,
            )
            await self._notify(
                order["id"],
                order["seller_id"],
                "seller-new-order",
                {
                    "items": order["items"],
                    "total_amount": order["total_amount"],
                    "commit_deadline": order["commit_deadline"],
                },
                warnings,
            )

        if payment_reference:
            for intent in failed_intents:
                await self._refund_unplaced(intent, payment_reference, log, warnings)

        if not placed:
            await self._publish_saga_event("SagaFailed", None, log.steps)
            unavailable = [
                book_id for f in failures for book_id in f.get("unavailable_book_ids", [])
            ]
            if unavailable:
                raise ReservationPartialFailure(
                    "None of the requested books could be reserved", unavailable, failures
                )
            raise errors[0]

        event_type = "SagaCompensated" if failures else "SagaCompleted"
        for order in placed:
            await self._publish_saga_event(event_type, order["order_id"], log.steps)

        return {
            "success": not failures,
            "orders": placed,
            "failures": failures,
            "warnings": warnings,
            "saga_log": log.steps,
        }

    async def _place_for_seller(
        self,
        intent: OrderIntent,
        payment_reference: str | None,
        log: SagaLog,
    ) -> dict:
        # 確保した行にも注文 ID を残すので、ID は引き当ての前に決める
        order_id = self.orders.new_order_id()

        # ── Step: 本を引き当て ───────────────────────
        step = log.begin("ReserveBooks", seller_id=intent.seller_id)
        try:
            result = await self.inventory.reserve(intent.book_ids, intent.buyer_id, order_id)
        except CollaboratorFailure as e:
            # 応答が失われただけで確保は済んでいるかもしれない
            log.fail(step, e)
            await self._release(intent.book_ids, order_id, log)
            raise
        except FulfillmentError as e:
            log.fail(step, e)
            raise

        unavailable = result["unavailable"]
        if unavailable:
            log.fail(step, f"Books not available: {', '.join(unavailable)}")
            if result["claimed"]:
                await self._release(result["claimed"], order_id, log)
            raise ReservationPartialFailure(
                f"Some books from seller {intent.seller_id} are no longer available",
                unavailable,
            )
        log.complete(step)

        # ── Step: 注文を作成 ─────────────────────────
        step = log.begin("CreateOrder", seller_id=intent.seller_id, order_id=order_id)
        try:
            order = await self.orders.create_order(
                order_id,
                intent.seller_id,
                intent.items,
                intent.buyer_id,
                payment_reference,
                intent.shipping_address,
            )
        except CollaboratorFailure as e:
            order = await self._find_order(order_id)
            if order is None:
                log.fail(step, e)
                await self._release(intent.book_ids, order_id, log)
                raise
        except FulfillmentError as e:
            log.fail(step, e)
            await self._release(intent.book_ids, order_id, log)
            raise

        log.complete(step)
        logger.info(
            "Order %s created for seller %s (%.2f)",
            order["id"],
            intent.seller_id,
            order["total_amount"],
        )
        return order

    async def _find_order(self, order_id: str) -> dict | None:
        try:
            return await self.orders.get_order(order_id)
        except FulfillmentError:
            return None

    async def _refund_unplaced(
        self,
        intent: OrderIntent,
        payment_reference: str,
        log: SagaLog,
        warnings: list[str],
    ) -> None:
        """注文にできなかった出品者分の決済を返金する。"""
        refund = await self._issue_refund(
            f"checkout:{payment_reference}:{intent.seller_id}",
            None,
            payment_reference,
            intent.subtotal,
            f"Books from seller {intent.seller_id} could not be allocated",
            log,
        )
        if refund is None or refund["status"] != "completed":
            warnings.append(
                f"Refund for seller {intent.seller_id} is pending and will be retried"
            )

    # ── 出品者のコミット ─────────────────────────────

    async def commit(
        self,
        order_id: str,
        seller_id: str,
        now: datetime | None = None,
    ) -> dict:
        """
        出品者が 48 時間以内に販売を確約する。

        期限を過ぎたコミットはその場で期限切れ処理を走らせ、ConflictError で拒否する。
        配送手配と通知の失敗は警告として返すだけで、注文は committed のまま。
        """
        now = now or utcnow()
        order = await self.orders.get_order(order_id)
        if order["seller_id"] != seller_id:
            raise NotFoundError("Order not found or access denied")
        if order["status"] != "pending_commit":
            raise ConflictError(f"Order {order_id} is {order['status']}, not pending_commit")
        if now >= _parse(order["commit_deadline"]):
            await self.expire(order_id)
            raise ConflictError(f"Commit deadline for order {order_id} has passed")

        log = SagaLog()
        warnings: list[str] = []

        # ── Step: committed に遷移 ───────────────────
        step = log.begin("CommitOrder", order_id=order_id)
        try:
            order = await self.orders.transition(order_id, "pending_commit", "committed")
        except FulfillmentError as e:
            log.fail(step, e)
            raise
        log.complete(step)

        # ── Step: 本を sold に ──────────────────────
        step = log.begin("MarkBooksSold", order_id=order_id)
        book_ids = [item["book_id"] for item in order["items"]]
        try:
            await self.inventory.mark_sold(book_ids, order_id)
            log.complete(step)
        except FulfillmentError as e:
            log.fail(step, e)
            logger.warning("Failed to mark books sold for order %s: %s", order_id, e)
            warnings.append(f"Books for order {order_id} could not be marked sold: {e.detail}")

        # ── Step: 配送手配 (ベストエフォート) ─────────
        profile = await self._seller_profile(order["seller_id"])
        pickup_address = profile["pickup_address"] if profile else None
        total_weight = round(
            sum(item.get("weight_kg") or DEFAULT_BOOK_WEIGHT_KG for item in order["items"]), 2
        )
        step = log.begin("TriggerDelivery", order_id=order_id)
        manual_delivery = False
        try:
            result = await self.delivery.trigger(
                order_id, pickup_address, order["shipping_address"], total_weight
            )
            tracking = result.get("tracking_number") or result.get("tracking_reference")
            log.complete(step, tracking_reference=tracking)
            order = await self._record_delivery(order, "scheduled", tracking, warnings)
        except CollaboratorFailure as e:
            log.fail(step, e)
            logger.warning("Delivery automation failed for order %s: %s", order_id, e)
            manual_delivery = True
            warnings.append(f"Delivery could not be scheduled automatically: {e.detail}")
            order = await self._record_delivery(order, "manual_required", None, warnings)

        # ── Step: 通知 ──────────────────────────────
        seller_template = (
            "commit-confirmation-basic" if manual_delivery else "seller-pickup-notification"
        )
        await self._notify(
            order_id,
            order["seller_id"],
            seller_template,
            {"items": order["items"], "pickup_address": pickup_address},
            warnings,
        )
        await self._notify(
            order_id,
            order["buyer_id"],
            "buyer-order-confirmed",
            {"items": order["items"], "total_amount": order["total_amount"]},
            warnings,
        )

        await self._publish_saga_event("SagaCompleted", order_id, log.steps)
        return {
            "order": order,
            "warnings": warnings,
            "manual_delivery_required": manual_delivery,
            "saga_log": log.steps,
        }

    async def _seller_profile(self, seller_id: str) -> dict | None:
        try:
            return await self.orders.get_profile(seller_id)
        except FulfillmentError as e:
            logger.warning("Could not load profile for seller %s: %s", seller_id, e)
            return None

    async def _record_delivery(
        self,
        order: dict,
        delivery_status: str,
        tracking_reference: str | None,
        warnings: list[str],
    ) -> dict:
        try:
            return await self.orders.set_delivery_status(
                order["id"], delivery_status, tracking_reference
            )
        except FulfillmentError as e:
            logger.warning("Failed to record delivery status for %s: %s", order["id"], e)
            warnings.append(f"Delivery status could not be recorded: {e.detail}")
            return order

    # ── 失敗系の遷移 ────────────────────────────────

    async def expire(self, order_id: str) -> dict | None:
        """
        期限切れ処理。既に他のワーカーかコミットが遷移させていれば None を返す。
        """
        try:
            order = await self.orders.transition(
                order_id, "pending_commit", "expired", reason=EXPIRY_REASON
            )
        except ConflictError:
            logger.info("Order %s was already handled, skipping expiry", order_id)
            return None
        logger.info("Order %s expired", order_id)
        return await self._after_failure(order, "order-expired", EXPIRY_REASON)

    async def cancel(self, order_id: str, reason: str, requested_by: str | None = None) -> dict:
        """管理者・購入者によるキャンセル (pending_commit / committed から)"""
        if not reason or not reason.strip():
            raise ValidationError(
                "Cancellation requires a reason",
                [{"field": "reason", "message": "reason is required"}],
            )
        order = await self.orders.get_order(order_id)
        if order["status"] not in ("pending_commit", "committed"):
            raise ConflictError(f"Order {order_id} is {order['status']} and cannot be cancelled")

        order = await self.orders.transition(order_id, order["status"], "cancelled", reason=reason)
        logger.info("Order %s cancelled by %s: %s", order_id, requested_by or "unknown", reason)
        return await self._after_failure(order, "order-cancelled", reason)

    async def decline(self, order_id: str, seller_id: str, reason: str | None = None) -> dict:
        """出品者がコミットを辞退する。"""
        order = await self.orders.get_order(order_id)
        if order["seller_id"] != seller_id:
            raise NotFoundError("Order not found or access denied")
        if order["status"] != "pending_commit":
            raise ConflictError(f"Order {order_id} is {order['status']}, not pending_commit")

        full_reason = f"Seller declined: {reason or 'no reason given'}"
        order = await self.orders.transition(
            order_id, "pending_commit", "cancelled", reason=full_reason
        )
        return await self._after_failure(order, "order-declined", full_reason)

    async def request_refund(self, order_id: str, reason: str) -> dict:
        """コミット後の返金要求。返金が完了すれば refunded まで進める。"""
        if not reason or not reason.strip():
            raise ValidationError(
                "Refund request requires a reason",
                [{"field": "reason", "message": "reason is required"}],
            )
        order = await self.orders.transition(
            order_id, "committed", "refund_requested", reason=reason
        )
        return await self._after_failure(order, "refund-requested", reason)

    async def fulfill(self, order_id: str) -> dict:
        """集荷・配達が済んだ注文を fulfilled にする。"""
        order = await self.orders.transition(order_id, "committed", "fulfilled")
        warnings: list[str] = []
        await self._notify(
            order_id,
            order["buyer_id"],
            "order-fulfilled",
            {"items": order["items"], "tracking_reference": order["tracking_reference"]},
            warnings,
        )
        return {"order": order, "warnings": warnings}

    async def _after_failure(self, order: dict, template: str, reason: str) -> dict:
        log = SagaLog()
        warnings: list[str] = []
        order = await self._compensate(order, reason, log, warnings)

        data = {"reason": reason, "total_amount": order["total_amount"], "items": order["items"]}
        await self._notify(order["id"], order["buyer_id"], f"{template}-buyer", data, warnings)
        await self._notify(order["id"], order["seller_id"], f"{template}-seller", data, warnings)

        await self._publish_saga_event("SagaCompensated", order["id"], log.steps)
        return {"order": order, "warnings": warnings, "saga_log": log.steps}

    # ── 補償 ─────────────────────────────────────────

    async def _compensate(
        self,
        order: dict,
        reason: str,
        log: SagaLog,
        warnings: list[str],
    ) -> dict:
        """
        在庫解放と返金。どちらも冪等なので、リコンシリエーションから何度呼んでもよい。
        すべて成功したときだけ compensated_at を記録する。
        """
        order_id = order["id"]
        book_ids = [item["book_id"] for item in order["items"]]
        done = await self._release(book_ids, order_id, log)
        if not done:
            warnings.append(f"Books for order {order_id} could not be released yet")

        if order["payment_reference"]:
            refund = await self._issue_refund(
                f"order:{order_id}",
                order_id,
                order["payment_reference"],
                order["total_amount"],
                reason,
                log,
            )
            if refund is None:
                done = False
                warnings.append(f"Refund for order {order_id} could not be recorded yet")
            elif refund["status"] != "completed":
                warnings.append(f"Refund for order {order_id} is pending and will be retried")
            elif order["status"] == "refund_requested":
                order = await self._finish_refund(order, log)
        elif order["status"] == "refund_requested":
            # 決済がなければ返金するものもない
            order = await self._finish_refund(order, log)

        if done:
            try:
                order = await self.orders.mark_compensated(order_id)
            except FulfillmentError as e:
                logger.warning("Failed to mark order %s compensated: %s", order_id, e)
        return order

    async def _release(self, book_ids: list[str], order_id: str, log: SagaLog) -> bool:
        step = log.begin("ReleaseBooks (COMPENSATING)", book_ids=book_ids)
        try:
            result = await self.inventory.release(book_ids, order_id)
        except FulfillmentError as e:
            log.fail(step, e)
            logger.warning("Failed to release books %s: %s", book_ids, e)
            return False
        log.complete(step, released=result["released"])
        return True

    async def _issue_refund(
        self,
        idempotency_key: str,
        order_id: str | None,
        payment_reference: str,
        amount: float,
        reason: str,
        log: SagaLog,
    ) -> dict | None:
        """返金記録を起票し (既存ならそれを使う)、未完了ならゲートウェイを呼ぶ。"""
        step = log.begin("RecordRefund (COMPENSATING)", idempotency_key=idempotency_key)
        try:
            refund = await self.orders.ensure_refund(
                idempotency_key, order_id, payment_reference, amount, reason
            )
        except FulfillmentError as e:
            log.fail(step, e)
            logger.warning("Failed to record refund %s: %s", idempotency_key, e)
            return None
        log.complete(step, refund_id=refund["id"])

        if refund["status"] == "completed":
            return refund
        return await self._attempt_refund(refund, log)

    async def _attempt_refund(self, refund: dict, log: SagaLog) -> dict:
        """
        返金を 1 回試行する。attempts による楽観的ロックで試行を確保してから
        ゲートウェイを呼ぶので、同じ試行で二重に返金されることはない。
        """
        step = log.begin("IssueRefund (COMPENSATING)", refund_id=refund["id"])
        try:
            refund = await self.orders.begin_refund_attempt(refund["id"], refund["attempts"])
        except ConflictError:
            log.skip(step, "attempt already claimed by another worker")
            return refund
        except FulfillmentError as e:
            log.fail(step, e)
            return refund

        try:
            reference = await self.payments.refund(
                refund["payment_reference"], refund["amount"], refund["reason"], refund["id"]
            )
        except CollaboratorFailure as e:
            log.fail(step, e)
            logger.warning("Refund %s failed: %s", refund["id"], e)
            try:
                return await self.orders.record_refund_result(
                    refund["id"], "failed", error=e.detail
                )
            except FulfillmentError as record_error:
                logger.warning("Failed to record refund failure %s: %s", refund["id"], record_error)
                return refund

        try:
            refund = await self.orders.record_refund_result(
                refund["id"], "completed", gateway_reference=reference
            )
        except ConflictError:
            refund = {**refund, "status": "completed"}
        except FulfillmentError as e:
            # ゲートウェイ側では返金済み。記録できなかったことだけをエラーログに残す
            log.fail(step, e)
            logger.error("Refund %s succeeded but could not be recorded: %s", refund["id"], e)
            return refund
        log.complete(step, gateway_reference=reference)
        return refund

    async def _finish_refund(self, order: dict, log: SagaLog) -> dict:
        step = log.begin("CompleteRefund", order_id=order["id"])
        try:
            order = await self.orders.transition(order["id"], "refund_requested", "refunded")
        except ConflictError as e:
            log.skip(step, str(e))
            return order
        except FulfillmentError as e:
            log.fail(step, e)
            return order
        log.complete(step)
        return order

    # ── スケジューラから呼ばれる処理 ───────────────

    async def sweep(self, now: datetime | None = None) -> dict:
        """期限を過ぎた pending_commit の注文をすべて期限切れにする。"""
        now = now or utcnow()
        summary = {"processed": 0, "expired": [], "skipped": [], "errors": []}
        for order in await self.orders.find_expired(now):
            summary["processed"] += 1
            try:
                result = await self.expire(order["id"])
            except FulfillmentError as e:
                logger.warning("Failed to expire order %s: %s", order["id"], e)
                summary["errors"].append({"order_id": order["id"], "error": e.detail})
                continue
            if result is None:
                summary["skipped"].append(order["id"])
            else:
                summary["expired"].append(order["id"])
        if summary["processed"]:
            logger.info(
                "Deadline sweep: %d expired, %d skipped, %d errors",
                len(summary["expired"]),
                len(summary["skipped"]),
                len(summary["errors"]),
            )
        return summary

    async def send_reminders(self, now: datetime | None = None) -> dict:
        """作成から一定時間コミットされていない注文の出品者に催促する。"""
        now = now or utcnow()
        summary = {"sent": [], "errors": []}
        for order in await self.orders.find_reminders_due(now, REMINDER_AFTER_HOURS):
            remaining = _parse(order["commit_deadline"]) - now
            hours_left = max(0, int(remaining.total_seconds() // 3600))
            warnings: list[str] = []
            await self._notify(
                order["id"],
                order["seller_id"],
                "seller-commit-reminder",
                {
                    "items": order["items"],
                    "commit_deadline": order["commit_deadline"],
                    "hours_remaining": hours_left,
                    "urgent": hours_left <= URGENT_REMINDER_HOURS,
                },
                warnings,
            )
            if warnings:
                summary["errors"].append({"order_id": order["id"], "error": warnings[0]})
                continue
            try:
                await self.orders.mark_reminder_sent(order["id"])
            except ConflictError:
                pass
            except FulfillmentError as e:
                summary["errors"].append({"order_id": order["id"], "error": e.detail})
                continue
            summary["sent"].append(order["id"])
        return summary

    async def reconcile(self, now: datetime | None = None) -> dict:
        """
        リコンシリエーション

        1. failed の返金と、放置された pending の返金を再試行
        2. 補償が記録されていない失敗状態の注文の補償をやり直す
        3. 返金が完了した refund_requested の注文を refunded に進める
        4. 注文が作られないまま猶予を過ぎた確保を解放する
        個々の失敗は summary に集め、パス全体は止めない。
        """
        now = now or utcnow()
        summary = {
            "refunds_retried": [],
            "compensated": [],
            "refunded": [],
            "reservations_released": [],
            "errors": [],
        }

        for refund in await self.orders.list_refunds(["pending", "failed"]):
            if not self._refund_due(refund, now):
                continue
            log = SagaLog()
            result = await self._attempt_refund(refund, log)
            summary["refunds_retried"].append(
                {"refund_id": refund["id"], "status": result["status"]}
            )

        for order in await self.orders.find_uncompensated():
            log = SagaLog()
            warnings: list[str] = []
            try:
                order = await self._compensate(
                    order, order["cancellation_reason"] or "Order reconciliation", log, warnings
                )
            except FulfillmentError as e:
                summary["errors"].append({"order_id": order["id"], "error": e.detail})
                continue
            if order["compensated_at"]:
                summary["compensated"].append(order["id"])
            else:
                summary["errors"].append({"order_id": order["id"], "error": "; ".join(warnings)})

        for order in await self.orders.list_orders("refund_requested"):
            refunds = await self.orders.list_refunds(["completed"], order_id=order["id"])
            if not refunds:
                continue
            log = SagaLog()
            finished = await self._finish_refund(order, log)
            if finished["status"] == "refunded":
                summary["refunded"].append(order["id"])

        await self._release_orphaned(now, summary)
        return summary

    async def _release_orphaned(self, now: datetime, summary: dict) -> None:
        """
        確保した注文 ID に対応する注文がない本を available に戻す。
        引き当てから注文作成までの間の確保を巻き込まないよう、猶予を過ぎたものだけ扱う。
        """
        cutoff = now - self.stale_reservation_after
        orphans: dict[str, list[str]] = {}
        for book in await self.inventory.list_reserved():
            reserved_at = _parse(book["reserved_at"])
            if book["reserved_for"] and reserved_at and reserved_at <= cutoff:
                orphans.setdefault(book["reserved_for"], []).append(book["id"])

        for order_id, book_ids in orphans.items():
            try:
                await self.orders.get_order(order_id)
                continue
            except NotFoundError:
                pass
            except FulfillmentError as e:
                summary["errors"].append({"order_id": order_id, "error": e.detail})
                continue

            log = SagaLog()
            if await self._release(book_ids, order_id, log):
                logger.info("Released orphaned reservation %s: %s", order_id, book_ids)
                summary["reservations_released"].append(
                    {"order_id": order_id, "book_ids": book_ids}
                )
            else:
                summary["errors"].append(
                    {"order_id": order_id, "error": "orphaned reservation could not be released"}
                )

    def _refund_due(self, refund: dict, now: datetime) -> bool:
        """pending は未試行か、試行中のまま猶予を過ぎたものだけ再試行する。"""
        if refund["status"] == "failed" or refund["attempts"] == 0:
            return True
        return now - _parse(refund["updated_at"]) >= self.refund_retry_after

    # ── 通知・イベント ──────────────────────────────

    async def _notify(
        self,
        order_id: str,
        recipient_id: str,
        template: str,
        data: dict,
        warnings: list[str],
    ) -> None:
        try:
            await self.notifications.enqueue(
                recipient_id,
                template,
                {"order_id": order_id, **data},
                idempotency_key=f"{order_id}:{template}",
            )
        except CollaboratorFailure as e:
            logger.warning("Notification %s for order %s failed: %s", template, order_id, e)
            warnings.append(f"Notification {template} could not be sent")

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str | None,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        try:
            await self.redis.publish(
                "saga_events",
                json.dumps(
                    {
                        "event_type": event_type,
                        "order_id": order_id,
                        "saga_log": saga_log,
                    },
                    default=str,
                ),
            )
        except RedisError as e:
            logger.warning("Failed to publish %s for order %s: %s", event_type, order_id, e)
