"""
Tests for the inventory store: conditional reserve / release / sell.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fulfillment.errors import ConflictError, ValidationError
from fulfillment.inventory import commands, queries


@pytest.fixture
async def listed(inventory_session, redis):
    for book_id in ("b1", "b2", "b3"):
        await commands.add_book(inventory_session, redis, book_id, "seller-a", book_id, 100)


class TestAddBook:
    @pytest.mark.asyncio
    async def test_new_listing_is_available(self, inventory_session, redis):
        await commands.add_book(inventory_session, redis, "b1", "seller-a", "SICP", 250.0)

        book = await queries.get_book(inventory_session, "b1")
        assert book["status"] == "available"
        assert book["price"] == 250.0

    @pytest.mark.asyncio
    async def test_duplicate_listing_conflicts(self, inventory_session, redis):
        await commands.add_book(inventory_session, redis, "b1", "seller-a", "SICP", 250.0)
        with pytest.raises(ConflictError):
            await commands.add_book(inventory_session, redis, "b1", "seller-a", "SICP", 250.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [0, float("nan"), float("inf")])
    async def test_price_must_be_positive(self, inventory_session, redis, price):
        with pytest.raises(ValidationError):
            await commands.add_book(inventory_session, redis, "b1", "seller-a", "SICP", price)


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_claims_available_books(self, inventory_session, redis, listed):
        result = await commands.reserve_books(
            inventory_session, redis, ["b1", "b2"], "buyer-1", "ORD_1"
        )

        assert result == {"claimed": ["b1", "b2"], "unavailable": []}
        book = await queries.get_book(inventory_session, "b1")
        assert book["status"] == "reserved"
        assert book["reserved_by"] == "buyer-1"
        assert book["reserved_for"] == "ORD_1"

    @pytest.mark.asyncio
    async def test_partial_claim_reports_unavailable(self, inventory_session, redis, listed):
        await commands.reserve_books(inventory_session, redis, ["b2"], "buyer-1", "ORD_1")

        result = await commands.reserve_books(
            inventory_session, redis, ["b1", "b2", "missing"], "buyer-2", "ORD_2"
        )

        assert result == {"claimed": ["b1"], "unavailable": ["b2", "missing"]}

    @pytest.mark.asyncio
    async def test_concurrent_buyers_get_one_winner(self, inventory_db, redis, listed):
        async def attempt(buyer_id):
            async with inventory_db() as session:
                return await commands.reserve_books(
                    session, redis, ["b1"], buyer_id, f"ORD_{buyer_id}"
                )

        first, second = await asyncio.gather(attempt("buyer-1"), attempt("buyer-2"))

        winners = [r for r in (first, second) if r["claimed"] == ["b1"]]
        losers = [r for r in (first, second) if r["unavailable"] == ["b1"]]
        assert len(winners) == 1
        assert len(losers) == 1

        async with inventory_db() as session:
            book = await queries.get_book(session, "b1")
        winner = "buyer-1" if first is winners[0] else "buyer-2"
        assert book["status"] == "reserved"
        assert book["reserved_by"] == winner
        assert book["reserved_for"] == f"ORD_{winner}"

    @pytest.mark.asyncio
    async def test_reservation_publishes_event(self, inventory_session, redis, listed):
        redis.publish.reset_mock()
        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_1")

        channel, _ = redis.publish.call_args.args
        assert channel == "inventory_events"

    @pytest.mark.asyncio
    async def test_redis_outage_does_not_fail_the_reservation(
        self, inventory_session, redis, listed
    ):
        redis.publish.side_effect = RedisConnectionError("connection refused")

        result = await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_1")

        assert result == {"claimed": ["b1"], "unavailable": []}
        assert (await queries.get_book(inventory_session, "b1"))["status"] == "reserved"


class TestReleaseAndSell:
    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, inventory_session, redis, listed):
        await commands.reserve_books(inventory_session, redis, ["b1", "b2"], "buyer-1", "ORD_1")

        first = await commands.release_books(inventory_session, redis, ["b1", "b2"], "ORD_1")
        again = await commands.release_books(inventory_session, redis, ["b1", "b2"], "ORD_1")

        assert first == {"released": ["b1", "b2"]}
        assert again == {"released": []}
        book = await queries.get_book(inventory_session, "b1")
        assert book["status"] == "available"
        assert book["reserved_by"] is None
        assert book["reserved_for"] is None

    @pytest.mark.asyncio
    async def test_release_ignores_other_orders_books(self, inventory_session, redis, listed):
        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_1")

        result = await commands.release_books(inventory_session, redis, ["b1"], "ORD_2")

        assert result == {"released": []}
        assert (await queries.get_book(inventory_session, "b1"))["status"] == "reserved"

    @pytest.mark.asyncio
    async def test_stale_release_keeps_same_buyers_newer_order(
        self, inventory_session, redis, listed
    ):
        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_old")
        await commands.release_books(inventory_session, redis, ["b1"], "ORD_old")
        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_new")

        result = await commands.release_books(inventory_session, redis, ["b1"], "ORD_old")

        assert result == {"released": []}
        book = await queries.get_book(inventory_session, "b1")
        assert book["status"] == "reserved"
        assert book["reserved_for"] == "ORD_new"

    @pytest.mark.asyncio
    async def test_sell_then_release_returns_book(self, inventory_session, redis, listed):
        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_1")

        sold = await commands.mark_books_sold(inventory_session, redis, ["b1"], "ORD_1")
        assert sold == {"sold": ["b1"]}
        assert (await queries.get_book(inventory_session, "b1"))["status"] == "sold"

        await commands.release_books(inventory_session, redis, ["b1"], "ORD_1")
        book = await queries.get_book(inventory_session, "b1")
        assert book["status"] == "available"
        assert book["sold_at"] is None

    @pytest.mark.asyncio
    async def test_only_the_reserving_order_can_sell(self, inventory_session, redis, listed):
        assert await commands.mark_books_sold(inventory_session, redis, ["b1"], "ORD_1") == {
            "sold": []
        }

        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_1")
        sold = await commands.mark_books_sold(inventory_session, redis, ["b1"], "ORD_2")

        assert sold == {"sold": []}
        assert (await queries.get_book(inventory_session, "b1"))["status"] == "reserved"

    @pytest.mark.asyncio
    async def test_list_books_filters_by_status(self, inventory_session, redis, listed):
        await commands.reserve_books(inventory_session, redis, ["b1"], "buyer-1", "ORD_1")

        available = await queries.list_books(inventory_session, status="available")

        assert sorted(b["id"] for b in available) == ["b2", "b3"]
