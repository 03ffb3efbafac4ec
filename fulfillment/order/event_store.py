"""
Order Service - 注文履歴ストア

注文に対するすべての変更を order_events に追記する (削除・更新はしない)。
(order_id, version) の UNIQUE 制約があるので、同じバージョンへの二重追記は失敗する。
"""

from datetime import datetime

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_events


async def append_event(
    session: AsyncSession,
    order_id: str,
    event_type: str,
    event_data: dict,
    version: int,
    now: datetime,
) -> None:
    """
    イベントを追記する。コミットは呼び出し側が注文の更新と同じトランザクションで行う。
    """
    await session.execute(
        insert(order_events).values(
            order_id=order_id,
            event_type=event_type,
            event_data=event_data,
            version=version,
            created_at=now,
        )
    )


async def load_events(session: AsyncSession, order_id: str) -> list[dict]:
    """指定した注文の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(order_events)
        .where(order_events.c.order_id == order_id)
        .order_by(order_events.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
