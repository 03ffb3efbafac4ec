"""
Shared fixtures for the fulfillment services.

The Order and Inventory services run in-process behind httpx.ASGITransport,
each on its own SQLite file database. Redis is an AsyncMock; the delivery
endpoint and Paystack are httpx.MockTransport handlers whose behaviour each
test can switch.
"""

import os

os.environ.setdefault("ORDER_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("INVENTORY_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")

import json
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from fulfillment.db import init_schema
from fulfillment.inventory import commands as inventory_commands
from fulfillment.inventory import main as inventory_main
from fulfillment.inventory.schema import metadata as inventory_metadata
from fulfillment.order import commands as order_commands
from fulfillment.order import main as order_main
from fulfillment.order.schema import metadata as order_metadata
from fulfillment.saga.clients import InventoryServiceClient, OrderServiceClient
from fulfillment.saga.collaborators import DeliveryTrigger, NotificationDispatcher, PaymentGateway
from fulfillment.saga.orchestrator import OrderSagaOrchestrator

ORDER_URL = "http://order-service"
INVENTORY_URL = "http://inventory-service"
DELIVERY_URL = "http://delivery.test/api"
PAYSTACK_URL = "https://paystack.test"


# ============================================
# INFRASTRUCTURE
# ============================================


@pytest.fixture
def redis():
    """Redis stand-in that records publish / rpush calls."""
    mock = AsyncMock()
    mock.publish = AsyncMock(return_value=1)
    mock.rpush = AsyncMock(return_value=1)
    return mock


async def _session_factory(path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def order_db(tmp_path):
    engine, factory = await _session_factory(tmp_path / "orders.db")
    await init_schema(engine, order_metadata)
    yield factory
    await engine.dispose()


@pytest.fixture
async def inventory_db(tmp_path):
    engine, factory = await _session_factory(tmp_path / "inventory.db")
    await init_schema(engine, inventory_metadata)
    yield factory
    await engine.dispose()


@pytest.fixture
async def order_session(order_db):
    async with order_db() as session:
        yield session


@pytest.fixture
async def inventory_session(inventory_db):
    async with inventory_db() as session:
        yield session


# ============================================
# IN-PROCESS SERVICES
# ============================================


def _override(app, module, factory, redis):
    async def get_session():
        async with factory() as session:
            yield session

    app.dependency_overrides[module.get_session] = get_session
    app.dependency_overrides[module.get_redis] = lambda: redis


@pytest.fixture
async def order_http(order_db, redis):
    _override(order_main.app, order_main, order_db, redis)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=order_main.app), base_url=ORDER_URL
    ) as client:
        yield client
    order_main.app.dependency_overrides.clear()


@pytest.fixture
async def inventory_http(inventory_db, redis):
    _override(inventory_main.app, inventory_main, inventory_db, redis)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=inventory_main.app), base_url=INVENTORY_URL
    ) as client:
        yield client
    inventory_main.app.dependency_overrides.clear()


# ============================================
# EXTERNAL COLLABORATORS
# ============================================


class FakeDelivery:
    """Courier automation endpoint; set fail=True to simulate an outage."""

    def __init__(self):
        self.fail = False
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.fail:
            return httpx.Response(503, json={"success": False, "error": "courier down"})
        return httpx.Response(
            200, json={"success": True, "tracking_number": f"TRK-{body['order_id'][-6:]}"}
        )


class FakePaystack:
    """Paystack refund endpoint; set fail=True to reject refunds."""

    def __init__(self):
        self.fail = False
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.fail:
            return httpx.Response(400, json={"status": False, "message": "Transaction not found"})
        return httpx.Response(
            200,
            json={
                "status": True,
                "message": "Refund has been queued for processing",
                "data": {"id": 1000 + len(self.requests), "status": "pending"},
            },
        )


@pytest.fixture
def delivery_api():
    return FakeDelivery()


@pytest.fixture
def paystack_api():
    return FakePaystack()


@pytest.fixture
async def coordinator(order_http, inventory_http, redis, delivery_api, paystack_api):
    delivery_http = httpx.AsyncClient(transport=httpx.MockTransport(delivery_api))
    paystack_http = httpx.AsyncClient(transport=httpx.MockTransport(paystack_api))
    yield OrderSagaOrchestrator(
        OrderServiceClient(order_http, ORDER_URL),
        InventoryServiceClient(inventory_http, INVENTORY_URL),
        DeliveryTrigger(delivery_http, DELIVERY_URL),
        NotificationDispatcher(redis),
        PaymentGateway(paystack_http, PAYSTACK_URL, secret_key="sk_test_123"),
        redis,
    )
    await delivery_http.aclose()
    await paystack_http.aclose()


# ============================================
# DATA HELPERS
# ============================================


@pytest.fixture
def seed(order_db, inventory_db, redis):
    """Register seller profiles and list books for them."""

    async def _seed(books: dict[str, list[tuple[str, float]]]):
        async with order_db() as session:
            for seller_id in books:
                await order_commands.upsert_profile(
                    session,
                    seller_id,
                    f"Seller {seller_id}",
                    f"{seller_id}@example.com",
                    {"street": "1 Campus Rd", "city": "Cape Town"},
                )
        async with inventory_db() as session:
            for seller_id, listed in books.items():
                for book_id, price in listed:
                    await inventory_commands.add_book(
                        session, redis, book_id, seller_id, f"Title {book_id}", price
                    )

    return _seed


def cart_item(book_id: str, seller_id: str, price: float, **extra) -> dict:
    return {
        "book_id": book_id,
        "seller_id": seller_id,
        "price": price,
        "title": f"Title {book_id}",
        **extra,
    }


def queued_templates(redis) -> list[str]:
    return [json.loads(call.args[1])["template"] for call in redis.rpush.call_args_list]
