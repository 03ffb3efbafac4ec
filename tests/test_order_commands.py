"""
Tests for the order ledger: creation, guarded transitions, refunds.
"""

import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fulfillment.db import utcnow
from fulfillment.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    SellerNotFound,
    ValidationError,
)
from fulfillment.order import commands, event_store, queries
from fulfillment.order.aggregate import OrderStatus, check_transition

PENDING = OrderStatus.PENDING_COMMIT
COMMITTED = OrderStatus.COMMITTED
EXPIRED = OrderStatus.EXPIRED


def _items(seller_id="seller-a"):
    return [
        {"book_id": "b1", "seller_id": seller_id, "price": 100.0, "title": "SICP"},
        {"book_id": "b2", "seller_id": seller_id, "price": 50.0, "title": "TAOCP"},
    ]


@pytest.fixture
async def seller(order_session):
    await commands.upsert_profile(order_session, "seller-a", "Alice", "alice@example.com")


@pytest.fixture
async def order(order_session, redis, seller):
    return await commands.create_order(
        order_session, redis, "seller-a", _items(), "buyer-1", "PAY-REF-1", {"city": "Pretoria"}
    )


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_order_starts_pending_with_48h_deadline(self, order_session, redis, seller):
        now = utcnow()

        order = await commands.create_order(
            order_session, redis, "seller-a", _items(), "buyer-1", None, None, now=now
        )

        assert order.status == PENDING
        assert order.total_amount == 150.0
        assert order.commit_deadline == now + timedelta(hours=48)
        assert order.version == 1
        assert order.book_ids == ["b1", "b2"]

    @pytest.mark.asyncio
    async def test_unknown_seller(self, order_session, redis):
        with pytest.raises(SellerNotFound):
            await commands.create_order(
                order_session, redis, "ghost", _items("ghost"), "buyer-1", None, None
            )

    @pytest.mark.asyncio
    async def test_empty_items_rejected(self, order_session, redis, seller):
        with pytest.raises(ValidationError):
            await commands.create_order(order_session, redis, "seller-a", [], "buyer-1", None, None)

    @pytest.mark.asyncio
    async def test_items_from_another_seller_rejected(self, order_session, redis, seller):
        items = _items() + [{"book_id": "b9", "seller_id": "seller-b", "price": 10.0}]
        with pytest.raises(ValidationError):
            await commands.create_order(
                order_session, redis, "seller-a", items, "buyer-1", None, None
            )

    @pytest.mark.asyncio
    async def test_duplicate_order_id_conflicts(self, order_session, redis, seller):
        await commands.create_order(
            order_session, redis, "seller-a", _items(), "buyer-1", None, None, order_id="ORD_1"
        )
        with pytest.raises(ConflictError):
            await commands.create_order(
                order_session, redis, "seller-a", _items(), "buyer-1", None, None, order_id="ORD_1"
            )

    @pytest.mark.asyncio
    async def test_creation_is_recorded_and_published(self, order_session, redis, order):
        history = await event_store.load_events(order_session, order.id)

        assert [e["event_type"] for e in history] == ["OrderCreated"]
        assert redis.publish.call_args.args[0] == "order_events"


class TestTransition:
    @pytest.mark.asyncio
    async def test_guarded_transition_updates_state(self, order_session, redis, order):
        committed = await commands.transition(order_session, redis, order.id, PENDING, COMMITTED)

        assert committed.status == COMMITTED
        assert committed.committed_at is not None
        assert committed.version == 2

        history = await event_store.load_events(order_session, order.id)
        assert [e["version"] for e in history] == [1, 2]
        assert history[-1]["event_type"] == "OrderCommitted"

    @pytest.mark.asyncio
    async def test_redis_outage_keeps_the_transition(self, order_session, redis, order):
        redis.publish.side_effect = RedisConnectionError("connection refused")

        committed = await commands.transition(order_session, redis, order.id, PENDING, COMMITTED)

        assert committed.status == COMMITTED
        assert (await queries.get_order(order_session, order.id)).status == COMMITTED

    @pytest.mark.asyncio
    async def test_loser_of_a_race_gets_conflict(self, order_session, redis, order):
        await commands.transition(order_session, redis, order.id, PENDING, EXPIRED)

        with pytest.raises(ConflictError):
            await commands.transition(order_session, redis, order.id, PENDING, COMMITTED)

        current = await queries.get_order(order_session, order.id)
        assert current.status == EXPIRED

    @pytest.mark.asyncio
    async def test_commit_and_expiry_race_has_one_winner(self, order_db, redis, order):
        async def attempt(new_status):
            async with order_db() as session:
                try:
                    await commands.transition(session, redis, order.id, PENDING, new_status)
                    return new_status
                except ConflictError:
                    return None

        results = await asyncio.gather(attempt(COMMITTED), attempt(EXPIRED))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        async with order_db() as session:
            assert (await queries.get_order(session, order.id)).status == winners[0]

    @pytest.mark.asyncio
    async def test_missing_order(self, order_session, redis):
        with pytest.raises(NotFoundError):
            await commands.transition(order_session, redis, "ORD_missing", PENDING, COMMITTED)

    @pytest.mark.parametrize(
        "current,new",
        [
            (PENDING, OrderStatus.FULFILLED),
            (COMMITTED, PENDING),
            (EXPIRED, COMMITTED),
            (OrderStatus.REFUNDED, COMMITTED),
            (PENDING, OrderStatus.REFUND_REQUESTED),
        ],
    )
    def test_edges_outside_the_table_are_invalid(self, current, new):
        with pytest.raises(InvalidTransition):
            check_transition(current, new)

    @pytest.mark.asyncio
    async def test_reason_is_stored(self, order_session, redis, order):
        cancelled = await commands.transition(
            order_session, redis, order.id, PENDING, OrderStatus.CANCELLED, reason="duplicate"
        )
        assert cancelled.cancellation_reason == "duplicate"
        assert cancelled.cancelled_at is not None


class TestSweepQueries:
    @pytest.mark.asyncio
    async def test_find_expired_uses_deadline(self, order_session, redis, order):
        before = await queries.find_expired(order_session, order.commit_deadline)
        after = await queries.find_expired(
            order_session, order.commit_deadline + timedelta(seconds=1)
        )

        assert before == []
        assert [o.id for o in after] == [order.id]

    @pytest.mark.asyncio
    async def test_committed_orders_never_expire(self, order_session, redis, order):
        await commands.transition(order_session, redis, order.id, PENDING, COMMITTED)

        found = await queries.find_expired(order_session, order.commit_deadline + timedelta(hours=1))

        assert found == []

    @pytest.mark.asyncio
    async def test_reminder_is_sent_once(self, order_session, redis, order):
        now = order.created_at + timedelta(hours=25)
        due = await queries.find_reminders_due(order_session, now, now - timedelta(hours=24))
        assert [o.id for o in due] == [order.id]

        await commands.mark_reminder_sent(order_session, order.id)

        assert await queries.find_reminders_due(order_session, now, now - timedelta(hours=24)) == []
        with pytest.raises(ConflictError):
            await commands.mark_reminder_sent(order_session, order.id)

    @pytest.mark.asyncio
    async def test_uncompensated_until_marked(self, order_session, redis, order):
        await commands.transition(order_session, redis, order.id, PENDING, EXPIRED)
        assert [o.id for o in await queries.find_uncompensated(order_session)] == [order.id]

        marked = await commands.mark_compensated(order_session, order.id)
        again = await commands.mark_compensated(order_session, order.id)

        assert marked.compensated_at is not None
        assert again.compensated_at == marked.compensated_at
        assert await queries.find_uncompensated(order_session) == []

    @pytest.mark.asyncio
    async def test_delivery_status_must_be_known(self, order_session, redis, order):
        with pytest.raises(ValidationError):
            await commands.set_delivery_status(order_session, redis, order.id, "teleported")

        updated = await commands.set_delivery_status(
            order_session, redis, order.id, "manual_required"
        )
        assert updated.delivery_status == "manual_required"
        assert updated.status == PENDING


class TestRefunds:
    @pytest.mark.asyncio
    async def test_ensure_refund_is_idempotent(self, order_session, redis, order):
        first = await commands.ensure_refund(
            order_session, redis, f"order:{order.id}", order.id, "PAY-REF-1", 150.0, "expired"
        )
        second = await commands.ensure_refund(
            order_session, redis, f"order:{order.id}", order.id, "PAY-REF-1", 150.0, "expired"
        )

        assert first["id"] == second["id"]
        assert first["status"] == "pending"
        assert len(await queries.list_refunds(order_session, order_id=order.id)) == 1

    @pytest.mark.asyncio
    async def test_attempt_claim_is_optimistic(self, order_session, redis, order):
        refund = await commands.ensure_refund(
            order_session, redis, "k1", order.id, "PAY-REF-1", 150.0, "expired"
        )

        claimed = await commands.begin_refund_attempt(order_session, refund["id"], 0)
        assert claimed["attempts"] == 1

        with pytest.raises(ConflictError):
            await commands.begin_refund_attempt(order_session, refund["id"], 0)

    @pytest.mark.asyncio
    async def test_completed_refund_is_immutable(self, order_session, redis, order):
        refund = await commands.ensure_refund(
            order_session, redis, "k1", order.id, "PAY-REF-1", 150.0, "expired"
        )
        done = await commands.record_refund_result(
            order_session, redis, refund["id"], "completed", gateway_reference="1001"
        )

        assert done["status"] == "completed"
        assert (await queries.get_order(order_session, order.id)).refunded_at is not None
        with pytest.raises(ConflictError):
            await commands.record_refund_result(order_session, redis, refund["id"], "failed")
        with pytest.raises(ConflictError):
            await commands.begin_refund_attempt(order_session, refund["id"], 0)

    @pytest.mark.asyncio
    async def test_failed_refund_keeps_error(self, order_session, redis, order):
        refund = await commands.ensure_refund(
            order_session, redis, "k1", order.id, "PAY-REF-1", 150.0, "expired"
        )
        failed = await commands.record_refund_result(
            order_session, redis, refund["id"], "failed", error="gateway timeout"
        )

        assert failed["status"] == "failed"
        assert failed["last_error"] == "gateway timeout"
        assert [r["id"] for r in await queries.list_refunds(order_session, ["failed"])] == [
            refund["id"]
        ]
