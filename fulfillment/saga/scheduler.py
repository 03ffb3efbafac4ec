"""
Saga Service - コミット期限スケジューラ

期限はメモリ上のタイマーではなく注文行の commit_deadline として保存されている。
スケジューラは定期的に DB を走査するだけなので、再起動しても期限は失われない。
複数のワーカーが同時に走らせても、ガード付き遷移により二重処理は起きない。
"""

import asyncio
import logging
from datetime import datetime

from ..config import SWEEP_INTERVAL_SECONDS
from ..db import utcnow
from .orchestrator import OrderSagaOrchestrator

logger = logging.getLogger(__name__)


class DeadlineScheduler:
    def __init__(
        self,
        coordinator: OrderSagaOrchestrator,
        interval: float = SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.coordinator = coordinator
        self.interval = interval

    async def run_once(self, now: datetime | None = None) -> dict:
        """期限切れスイープ、リマインダー、リコンシリエーションを 1 回ずつ実行する。"""
        now = now or utcnow()
        return {
            "sweep": await self.coordinator.sweep(now),
            "reminders": await self.coordinator.send_reminders(now),
            "reconcile": await self.coordinator.reconcile(now),
        }

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまで interval 秒ごとに run_once を繰り返す。
        1 回分の失敗はログに残して次の周期に進む。
        """
        logger.info("Deadline scheduler started (interval=%ss)", self.interval)
        while not shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Deadline sweep failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Deadline scheduler stopped")
