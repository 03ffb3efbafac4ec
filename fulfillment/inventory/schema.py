"""
Inventory Service - テーブル定義

books の status 列が available / reserved / sold のいずれか一つだけを取るので、
「sold かつ available」という状態は表現できない。
"""

from sqlalchemy import Column, Float, Index, MetaData, Numeric, String, Table

from ..db import UTCDateTime

AVAILABLE = "available"
RESERVED = "reserved"
SOLD = "sold"

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("seller_id", String(64), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("author", String(255), nullable=False, default=""),
    Column("condition", String(32), nullable=False, default=""),
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("weight_kg", Float, nullable=False, default=0.5),
    Column("status", String(16), nullable=False, default=AVAILABLE),
    Column("reserved_by", String(64), nullable=True),
    # 確保した注文の ID。解放・売却はこの列で照合する
    Column("reserved_for", String(64), nullable=True),
    Column("reserved_at", UTCDateTime, nullable=True),
    Column("sold_at", UTCDateTime, nullable=True),
    Column("updated_at", UTCDateTime, nullable=False),
    Index("ix_books_status", "status"),
    Index("ix_books_reserved_for", "reserved_for"),
)
