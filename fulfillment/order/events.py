"""
Order Service - イベント定義

注文で発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
order_events テーブルへの追記と Redis への発行の両方に使う。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作成された (出品者のコミット待ち)"""
    order_id: str
    buyer_id: str
    seller_id: str
    book_ids: list[str]
    total_amount: float
    commit_deadline: datetime
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """ガード付き遷移が成功した"""
    order_id: str
    from_status: str
    to_status: str
    reason: str | None = None
    timestamp: datetime


class OrderDeliveryUpdated(BaseModel):
    order_id: str
    delivery_status: str
    tracking_reference: str | None = None
    timestamp: datetime


class RefundRecorded(BaseModel):
    """返金記録が作成・更新された"""
    refund_id: str
    order_id: str | None
    amount: float
    status: str
    timestamp: datetime
