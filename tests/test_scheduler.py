"""
Tests for the commit deadline scheduler loop.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import cart_item
from fulfillment.db import utcnow
from fulfillment.saga.scheduler import DeadlineScheduler


def _fake_coordinator():
    coordinator = MagicMock()
    coordinator.sweep = AsyncMock(return_value={"processed": 0})
    coordinator.send_reminders = AsyncMock(return_value={"sent": []})
    coordinator.reconcile = AsyncMock(return_value={"refunds_retried": []})
    return coordinator


class TestDeadlineScheduler:
    @pytest.mark.asyncio
    async def test_run_once_runs_every_pass_with_the_same_clock(self):
        coordinator = _fake_coordinator()
        now = utcnow()

        result = await DeadlineScheduler(coordinator, interval=1).run_once(now)

        coordinator.sweep.assert_awaited_once_with(now)
        coordinator.send_reminders.assert_awaited_once_with(now)
        coordinator.reconcile.assert_awaited_once_with(now)
        assert set(result) == {"sweep", "reminders", "reconcile"}

    @pytest.mark.asyncio
    async def test_loop_survives_failures_and_stops_on_shutdown(self):
        coordinator = _fake_coordinator()
        coordinator.sweep.side_effect = [RuntimeError("db down"), {"processed": 0}] * 50
        shutdown = asyncio.Event()

        task = asyncio.create_task(DeadlineScheduler(coordinator, interval=0.01).run(shutdown))
        await asyncio.sleep(0.1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert coordinator.sweep.await_count >= 2
        assert coordinator.reconcile.await_count >= 1

    @pytest.mark.asyncio
    async def test_sweep_against_live_services(self, coordinator, seed):
        await seed({"seller-a": [("a1", 100)]})
        placed = await coordinator.place_order("buyer-1", [cart_item("a1", "seller-a", 100)])
        order_id = placed["orders"][0]["order_id"]

        result = await DeadlineScheduler(coordinator).run_once(
            utcnow() + timedelta(hours=48, minutes=1)
        )

        assert result["sweep"]["expired"] == [order_id]
        assert result["reconcile"]["compensated"] == []
