"""
Order Service - テーブル定義

orders: 注文の現在状態 (リードモデル兼ライトモデル)
order_events: 注文ごとの追記専用の履歴 (監査証跡)
refunds: 返金記録
profiles: 出品者・購入者の最小限のプロフィール
"""

from sqlalchemy import (
    JSON,
    Column,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

from ..db import UTCDateTime

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("buyer_id", String(64), nullable=False, index=True),
    Column("seller_id", String(64), nullable=False, index=True),
    Column("items", JSON, nullable=False),
    Column("total_amount", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("payment_reference", String(128), nullable=True),
    Column("shipping_address", JSON, nullable=True),
    Column("status", String(32), nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("commit_deadline", UTCDateTime, nullable=False),
    Column("cancellation_reason", Text, nullable=True),
    Column("delivery_status", String(32), nullable=False, default="not_requested"),
    Column("tracking_reference", String(128), nullable=True),
    Column("reminder_sent_at", UTCDateTime, nullable=True),
    Column("compensated_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("committed_at", UTCDateTime, nullable=True),
    Column("expired_at", UTCDateTime, nullable=True),
    Column("cancelled_at", UTCDateTime, nullable=True),
    Column("fulfilled_at", UTCDateTime, nullable=True),
    Column("refund_requested_at", UTCDateTime, nullable=True),
    Column("refunded_at", UTCDateTime, nullable=True),
    Column("updated_at", UTCDateTime, nullable=False),
    Index("ix_orders_status_deadline", "status", "commit_deadline"),
)

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    UniqueConstraint("order_id", "version", name="uq_order_events_version"),
)

refunds = Table(
    "refunds",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("idempotency_key", String(200), nullable=False, unique=True),
    Column("order_id", String(64), nullable=True, index=True),
    Column("payment_reference", String(128), nullable=False),
    Column("amount", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("reason", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("gateway_reference", String(128), nullable=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("completed_at", UTCDateTime, nullable=True),
)

profiles = Table(
    "profiles",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("pickup_address", JSON, nullable=True),
    Column("updated_at", UTCDateTime, nullable=False),
)
