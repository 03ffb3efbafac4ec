"""
Order Service - 注文集約 (Order Aggregate)

注文の状態遷移表を持つ。遷移はすべて前進のみで、後戻りする辺は存在しない。

    pending_commit ──▶ committed ──▶ fulfilled
         │                 │
         │                 ├──▶ cancelled
         │                 └──▶ refund_requested ──▶ refunded
         ├──▶ expired
         └──▶ cancelled
"""

from datetime import datetime
from enum import Enum

from ..errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING_COMMIT = "pending_commit"
    COMMITTED = "committed"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_COMMIT: frozenset(
        {OrderStatus.COMMITTED, OrderStatus.EXPIRED, OrderStatus.CANCELLED}
    ),
    OrderStatus.COMMITTED: frozenset(
        {OrderStatus.FULFILLED, OrderStatus.CANCELLED, OrderStatus.REFUND_REQUESTED}
    ),
    OrderStatus.REFUND_REQUESTED: frozenset({OrderStatus.REFUNDED}),
}

# 遷移先ごとに記録するタイムスタンプ列とイベント名
TIMESTAMP_COLUMNS = {
    OrderStatus.COMMITTED: "committed_at",
    OrderStatus.FULFILLED: "fulfilled_at",
    OrderStatus.EXPIRED: "expired_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REFUND_REQUESTED: "refund_requested_at",
    OrderStatus.REFUNDED: "refunded_at",
}

EVENT_TYPES = {
    OrderStatus.COMMITTED: "OrderCommitted",
    OrderStatus.FULFILLED: "OrderFulfilled",
    OrderStatus.EXPIRED: "OrderExpired",
    OrderStatus.CANCELLED: "OrderCancelled",
    OrderStatus.REFUND_REQUESTED: "OrderRefundRequested",
    OrderStatus.REFUNDED: "OrderRefunded",
}

# 在庫解放と返金 (補償) が必要な状態
COMPENSATION_STATES = frozenset(
    {OrderStatus.EXPIRED, OrderStatus.CANCELLED, OrderStatus.REFUND_REQUESTED}
)


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    """遷移表にない辺なら InvalidTransition を投げる。"""
    if new not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"Transition {current.value} -> {new.value} is not allowed"
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class OrderAggregate:
    """注文 1 件の現在状態。orders テーブルの行から組み立てる。"""

    def __init__(self, row) -> None:
        self.id: str = row.id
        self.buyer_id: str = row.buyer_id
        self.seller_id: str = row.seller_id
        self.items: list[dict] = row.items
        self.total_amount: float = float(row.total_amount)
        self.payment_reference: str | None = row.payment_reference
        self.shipping_address: dict | None = row.shipping_address
        self.status = OrderStatus(row.status)
        self.version: int = row.version
        self.commit_deadline: datetime = row.commit_deadline
        self.cancellation_reason: str | None = row.cancellation_reason
        self.delivery_status: str = row.delivery_status
        self.tracking_reference: str | None = row.tracking_reference
        self.reminder_sent_at: datetime | None = row.reminder_sent_at
        self.compensated_at: datetime | None = row.compensated_at
        self.created_at: datetime = row.created_at
        self.committed_at: datetime | None = row.committed_at
        self.expired_at: datetime | None = row.expired_at
        self.cancelled_at: datetime | None = row.cancelled_at
        self.fulfilled_at: datetime | None = row.fulfilled_at
        self.refund_requested_at: datetime | None = row.refund_requested_at
        self.refunded_at: datetime | None = row.refunded_at
        self.updated_at: datetime = row.updated_at

    @property
    def book_ids(self) -> list[str]:
        return [item["book_id"] for item in self.items]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "items": self.items,
            "total_amount": self.total_amount,
            "payment_reference": self.payment_reference,
            "shipping_address": self.shipping_address,
            "status": self.status.value,
            "version": self.version,
            "commit_deadline": _iso(self.commit_deadline),
            "cancellation_reason": self.cancellation_reason,
            "delivery_status": self.delivery_status,
            "tracking_reference": self.tracking_reference,
            "reminder_sent_at": _iso(self.reminder_sent_at),
            "compensated_at": _iso(self.compensated_at),
            "created_at": _iso(self.created_at),
            "committed_at": _iso(self.committed_at),
            "expired_at": _iso(self.expired_at),
            "cancelled_at": _iso(self.cancelled_at),
            "fulfilled_at": _iso(self.fulfilled_at),
            "refund_requested_at": _iso(self.refund_requested_at),
            "refunded_at": _iso(self.refunded_at),
            "updated_at": _iso(self.updated_at),
        }
