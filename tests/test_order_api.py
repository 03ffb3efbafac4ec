"""
HTTP-level tests for the Order Service command/query endpoints.
"""

import pytest

from conftest import cart_item


@pytest.fixture
async def created(order_http):
    await order_http.put(
        "/commands/profiles/seller-a",
        json={"name": "Alice", "email": "alice@example.com", "pickup_address": {"city": "Joburg"}},
    )
    resp = await order_http.post(
        "/commands/orders",
        json={
            "buyer_id": "buyer-1",
            "seller_id": "seller-a",
            "items": [cart_item("a1", "seller-a", 120.5)],
            "payment_reference": "PAY-9",
        },
    )
    assert resp.status_code == 201
    return resp.json()


class TestOrderApi:
    @pytest.mark.asyncio
    async def test_create_and_read_back(self, order_http, created):
        resp = await order_http.get(f"/queries/orders/{created['id']}")

        assert resp.json()["total_amount"] == 120.5
        assert resp.json()["status"] == "pending_commit"

    @pytest.mark.asyncio
    async def test_unknown_seller_error_body(self, order_http):
        resp = await order_http.post(
            "/commands/orders",
            json={
                "buyer_id": "buyer-1",
                "seller_id": "ghost",
                "items": [cart_item("x1", "ghost", 10)],
            },
        )

        assert resp.status_code == 404
        assert resp.json()["error"] == "seller_not_found"

    @pytest.mark.asyncio
    async def test_history_follows_transitions(self, order_http, created):
        order_id = created["id"]
        await order_http.post(
            f"/commands/orders/{order_id}/transition",
            json={"expected_status": "pending_commit", "new_status": "committed"},
        )

        resp = await order_http.get(f"/events/{order_id}")

        assert [e["event_type"] for e in resp.json()] == ["OrderCreated", "OrderCommitted"]

    @pytest.mark.asyncio
    async def test_invalid_edge_is_rejected(self, order_http, created):
        resp = await order_http.post(
            f"/commands/orders/{created['id']}/transition",
            json={"expected_status": "pending_commit", "new_status": "fulfilled"},
        )

        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_stale_transition_is_a_conflict(self, order_http, created):
        url = f"/commands/orders/{created['id']}/transition"
        body = {"expected_status": "pending_commit", "new_status": "expired"}

        first = await order_http.post(url, json=body)
        second = await order_http.post(url, json=body)

        assert first.status_code == 200
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, order_http, created):
        resp = await order_http.get("/queries/orders", params={"status": "pending_commit"})
        assert [o["id"] for o in resp.json()] == [created["id"]]

        resp = await order_http.get("/queries/orders", params={"status": "committed"})
        assert resp.json() == []
