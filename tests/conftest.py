"""
Cafe Amore test fixtures

  - In-memory SQLite (aiosqlite + StaticPool), fresh schema per test
  - In-process FakeRedis assigned to the client singleton
  - FakeGateway standing in for the PayMongo client
  - JWT helpers signing tokens with the test secret
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["METRICS_ENABLED"] = "false"
os.environ["PAYMONGO_SECRET_KEY"] = "sk_test_123"
os.environ["PAYMONGO_WEBHOOK_SECRET"] = ""
os.environ["OPT_LOCK_BASE_DELAY_MS"] = "1"
os.environ["OPT_LOCK_JITTER_MS"] = "1"
os.environ["HTTP_RETRY_BASE_DELAY_MS"] = "1"

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cafe_amore.core import redis_client
from cafe_amore.core.config import get_settings
from cafe_amore.db.database import Base, get_db
from cafe_amore.models.address import Address  # noqa: F401
from cafe_amore.models.cart import CartLine  # noqa: F401
from cafe_amore.models.catalog import Product
from cafe_amore.models.inventory import InventoryItem
from cafe_amore.models.order import Notification, Order, WebhookEvent  # noqa: F401
from cafe_amore.services.cart import CartOwner, CartStore
from cafe_amore.services.catalog import load_snapshot
from cafe_amore.services.paymongo import PaymentGatewayError, get_payment_gateway

settings = get_settings()


# ─── Fakes ─────────────────────────────────────────────────────────────────────
class FakeRedis:
    """Just enough of redis.asyncio.Redis for the code under test (TTLs ignored)."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.published: list[tuple[str, dict]] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 0

    async def ping(self):
        return True

    async def aclose(self):
        pass

    def messages(self, channel: str) -> list[dict]:
        return [payload for ch, payload in self.published if ch == channel]


class FakeGateway:
    def __init__(self):
        self.sessions: list[str] = []
        self.refunds: list[tuple[str, int]] = []
        self.fail = False

    async def create_checkout_session(self, order, description=None):
        if self.fail:
            raise PaymentGatewayError("PayMongo unreachable", timeout=True)
        self.sessions.append(order.id)
        return f"https://checkout.paymongo.test/{order.id}"

    async def create_refund(self, payment_id, amount, reason="requested_by_customer", notes=None):
        if self.fail:
            raise PaymentGatewayError("refund rejected", status_code=400)
        self.refunds.append((payment_id, amount))
        return {"id": f"ref_{len(self.refunds)}", "attributes": {"status": "pending"}}


# ─── Auth helpers ──────────────────────────────────────────────────────────────
def make_token(uid: str, role: str = "customer", name: str | None = None) -> str:
    claims = {
        "sub": uid,
        "email": f"{uid}@example.com",
        "name": name or uid.title(),
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth(uid: str, role: str = "customer") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(uid, role)}"}


def user(uid: str, role: str = "customer") -> dict:
    return {"uid": uid, "email": f"{uid}@example.com", "name": uid.title(), "role": role}


# ─── Database / Redis fixtures ─────────────────────────────────────────────────
@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fake_redis():
    fake = FakeRedis()
    redis_client._redis_client = fake
    yield fake
    redis_client._redis_client = None


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client(session_factory, gateway):
    from cafe_amore.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ─── Catalog seeds ─────────────────────────────────────────────────────────────
async def seed(db, inventory: list[dict], products: list[dict]) -> None:
    for item in inventory:
        db.add(InventoryItem(**item))
    for product in products:
        db.add(Product(**product))
    await db.commit()


LATTE = {
    "id": "latte",
    "name": "Latte",
    "category": "Coffee",
    "price": 12000,
    "sizes": [{"id": "S1", "name": "Medium", "price": 0, "qty": 1}],
    "addons": [{"id": "A1", "name": "Extra Shot", "price": 3000, "qty": 1}],
}


@pytest_asyncio.fixture
async def latte_catalog(db):
    """Latte: size Medium (S1, 4 left) and add-on Extra Shot (A1, 2 left)."""
    await seed(
        db,
        inventory=[
            {"id": "S1", "name": "Medium Cup", "category": "Size", "unit": "piece", "quantity": 4},
            {"id": "A1", "name": "Extra Shot", "category": "Addon", "unit": "shot", "quantity": 2},
        ],
        products=[LATTE],
    )


@pytest_asyncio.fixture
async def cafe_catalog(db):
    """
    Mocha and Americano sharing the same cup and espresso:
      cup-12   20 pcs     espresso 180 g (18 g per drink)
      milk     1000 ml    (200 ml per mocha)
      syrup    add-on with a nested 10 ml milk component
    """
    await seed(
        db,
        inventory=[
            {"id": "cup-12", "name": "12oz Cup", "category": "Size", "unit": "piece", "quantity": 20},
            {"id": "espresso", "name": "Espresso Beans", "category": "Ingredient", "unit": "g", "quantity": 180},
            {"id": "milk", "name": "Milk", "category": "Ingredient", "unit": "ml", "quantity": 1000},
            {"id": "lid", "name": "Lid", "category": "Other", "unit": "piece", "quantity": 50},
            {
                "id": "syrup", "name": "Caramel Syrup", "category": "Addon", "unit": "squeeze",
                "quantity": 30, "ingredients": [{"id": "milk", "qty": 10}],
            },
        ],
        products=[
            {
                "id": "mocha",
                "name": "Mocha",
                "category": "Coffee",
                "price": 10000,
                "ingredients": [{"id": "espresso", "qty": 18}, {"id": "milk", "qty": 200}],
                "others": [{"id": "lid", "qty": 1}],
                "sizes": [{"id": "cup-12", "name": "12oz", "price": 2000, "qty": 1}],
                "addons": [{"id": "syrup", "name": "Caramel", "price": 1500, "qty": 1}],
            },
            {
                "id": "americano",
                "name": "Americano",
                "category": "Coffee",
                "price": 9000,
                "ingredients": [{"id": "espresso", "qty": 18}],
                "sizes": [{"id": "cup-12", "name": "12oz", "price": 2000, "qty": 1}],
            },
        ],
    )


# ─── Helpers ───────────────────────────────────────────────────────────────────
async def cart_store(db) -> CartStore:
    return CartStore(db, redis_client.get_redis(), await load_snapshot(db))


async def add_line(db, user_id: str, product_id: str, size_id: str | None, addon_ids=(), quantity: int = 1) -> dict:
    store = await cart_store(db)
    return await store.add_item(CartOwner(user_id=user_id), product_id, size_id, list(addon_ids), quantity)


async def inventory_qty(db, inventory_id: str) -> int:
    return await db.scalar(select(InventoryItem.quantity).where(InventoryItem.id == inventory_id))


async def fresh_order(db, order_id: str) -> Order:
    return await db.get(Order, order_id, populate_existing=True)
