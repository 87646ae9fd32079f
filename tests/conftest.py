"""
Shared fixtures: the FastAPI app over an in-memory MongoDB and a scripted
payment gateway.
"""
import asyncio
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_marketplace")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "CRITICAL")

import httpx
import mongomock
import pytest

from auth import bootstrap_admin
from database import ensure_indexes, get_db
from errors import UpstreamError
from main import app
from payments import InitializedTransaction, VerifiedTransaction, get_gateway


class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    """Awaitable view of a mongomock collection.

    Every call yields to the event loop first, so coroutines started together
    with ``asyncio.gather`` interleave between driver calls as they would
    against a real server.
    """

    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    async def aggregate(self, pipeline, **kwargs):
        await asyncio.sleep(0)
        return AsyncCursor(self._collection.aggregate(pipeline, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return method(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database

    def __getitem__(self, name):
        return AsyncCollection(self._database[name])

    async def list_collection_names(self):
        return self._database.list_collection_names()


class FakeGateway:
    """Stands in for Paystack; tests script its answers."""

    def __init__(self):
        self.initialized = []
        self.verified = []
        self.verify_status = "success"
        self.fail_initialize = False

    async def initialize(self, email, amount, metadata=None):
        if self.fail_initialize:
            raise UpstreamError("Invalid key", {"status": False, "message": "Invalid key"})
        reference = f"ref-{len(self.initialized) + 1}"
        self.initialized.append({"email": email, "amount": amount, "metadata": metadata, "reference": reference})
        return InitializedTransaction(reference=reference, authorization_url=f"https://checkout.paystack.com/{reference}")

    async def verify(self, reference):
        self.verified.append(reference)
        return VerifiedTransaction(
            reference=reference,
            status=self.verify_status,
            data={"status": self.verify_status, "reference": reference},
        )


class Api:
    """Thin helpers over the HTTP surface so tests read as user journeys."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self._count = 0

    async def register(self, role="customer", password="secret123"):
        self._count += 1
        email = f"{role}{self._count}@example.com"
        resp = await self.client.post(
            "/auth/register",
            json={"name": f"{role.title()} {self._count}", "email": email, "password": password, "role": role},
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return {"headers": {"Authorization": f"Bearer {body['token']}"}, "user": body["user"]}

    async def login(self, email, password):
        resp = await self.client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        body = resp.json()
        return {"headers": {"Authorization": f"Bearer {body['token']}"}, "user": body["user"]}

    async def open_outlet(self, owner, name="Corner Shop"):
        resp = await self.client.post(
            "/outlets",
            headers=owner["headers"],
            json={
                "name": name,
                "location": "Accra",
                "contact": {"phone": "+233200000000", "email": "shop@example.com"},
            },
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    async def add_product(self, owner, stock=5, price=100.0, title="Rice 5kg", **extra):
        payload = {
            "title": title,
            "description": "Long grain",
            "price": price,
            "stock": stock,
            "category": "Food",
            "images": ["rice.jpg"],
        }
        payload.update(extra)
        resp = await self.client.post("/products/outlet", headers=owner["headers"], json=payload)
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    async def product(self, product_id):
        resp = await self.client.get(f"/products/{product_id}")
        assert resp.status_code == 200, resp.text
        return resp.json()["data"]

    async def place_order(self, customer, items, method="cash_on_delivery", shipping_price=10.0):
        items_price = round(sum(p["price"] * qty for p, qty in items), 2)
        return await self.client.post(
            "/orders",
            headers=customer["headers"],
            json={
                "orderItems": [{"product": p["id"], "quantity": qty} for p, qty in items],
                "shipping": {
                    "fullName": "Ama Mensah",
                    "address": "12 Ring Road",
                    "city": "Accra",
                    "state": "Greater Accra",
                    "phone": "+233241111111",
                },
                "payment": {"method": method},
                "itemsPrice": items_price,
                "shippingPrice": shipping_price,
                "totalPrice": round(items_price + shipping_price, 2),
            },
        )

    async def set_status(self, actor, order_id, status):
        return await self.client.put(f"/orders/{order_id}/status", headers=actor["headers"], json={"status": status})


@pytest.fixture
async def db():
    database = AsyncDatabase(mongomock.MongoClient(tz_aware=True)["marketplace_test"])
    await ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def api(client):
    return Api(client)


@pytest.fixture
async def admin(db, api):
    await bootstrap_admin(db, "Root", "root@example.com", "rootpass123")
    return await api.login("root@example.com", "rootpass123")


@pytest.fixture
async def shop(api):
    """An outlet owner with one product of stock 5 at 100.00."""
    owner = await api.register("outlet")
    outlet = await api.open_outlet(owner)
    product = await api.add_product(owner, stock=5, price=100.0)
    return {"owner": owner, "outlet": outlet, "product": product}


@pytest.fixture
async def customer(api):
    return await api.register("customer")
