"""
Shared fixtures: temp database, controllable clock, fake mailer,
fake PayMongo transport, HTTP client.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from growlokal.accounts import AccountStore
from growlokal.core.config import cfg
from growlokal.core.database import init_all_tables
from growlokal.mailer import EmailResult
from growlokal.models.order import ShippingAddress
from growlokal.passwords import hash_password
from growlokal.products import ProductStore

STRONG_PASSWORD = "Sup3r$ecret"

ADDRESS = ShippingAddress(
    full_name   = "Maria Santos",
    email       = "maria@example.com",
    phone       = "09171234567",
    address     = "12 Mabini St",
    city        = "Iloilo City",
    province    = "Iloilo",
    postal_code = "5000",
)


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeMailer:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def send(self, kind, recipient, data):
        self.sent.append((kind, recipient, data))
        if not self.succeed:
            return EmailResult(success=False, error="smtp down")
        return EmailResult(success=True, message_id=f"msg_{len(self.sent)}")

    def last_link(self):
        return self.sent[-1][2]["link"]


class FakePayMongo:
    """httpx.MockTransport handler imitating the PayMongo endpoints we call."""

    def __init__(self):
        self.requests = []
        self.intents  = {}       # intent id → {"amount", "metadata"}
        self.intent_status  = "succeeded"
        self.payment_status = "paid"
        self.error = None        # (status_code, detail) → every call fails

    def _intent(self, intent_id, status=None):
        status = status or self.intent_status
        attrs  = {**self.intents[intent_id], "client_key": f"{intent_id}_client_abc", "status": status}
        if status == "awaiting_next_action":
            attrs["next_action"] = {"type": "redirect", "redirect": {"url": "https://3ds.example/auth"}}
        if status == "awaiting_payment_method":
            attrs["last_payment_error"] = {"failed_message": "Card declined"}
        return {"data": {"id": intent_id, "attributes": attrs}}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, request.url.path, body))

        if self.error:
            code, detail = self.error
            return httpx.Response(code, json={"errors": [{"detail": detail}]})

        path = request.url.path
        if request.method == "POST" and path.endswith("/payment_intents"):
            attrs     = body["data"]["attributes"]
            intent_id = f"pi_test_{len(self.intents) + 1}"
            self.intents[intent_id] = {"amount": attrs["amount"], "metadata": attrs["metadata"]}
            return httpx.Response(200, json=self._intent(intent_id, "awaiting_payment_method"))
        if "/payment_intents/" in path:
            intent_id = path.split("/payment_intents/")[1].split("/")[0]
            if intent_id not in self.intents:
                return httpx.Response(404, json={"errors": [{"detail": "No such payment_intent"}]})
            return httpx.Response(200, json=self._intent(intent_id))
        if request.method == "POST" and path.endswith("/sources"):
            return httpx.Response(200, json={"data": {
                "id": "src_test_1",
                "attributes": {
                    "status":   "pending",
                    "redirect": {"checkout_url": "https://pay.example/checkout/src_test_1"},
                },
            }})
        if request.method == "POST" and path.endswith("/payments"):
            return httpx.Response(200, json={"data": {
                "id": "pay_test_1",
                "attributes": {"status": self.payment_status},
            }})
        return httpx.Response(404, json={"errors": [{"detail": "Not found"}]})

    def paths(self):
        return [p for _, p, _ in self.requests]


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(cfg, "BCRYPT_ROUNDS", 4)
    monkeypatch.setattr(cfg, "ENV", "development")
    monkeypatch.setattr(cfg, "DISABLE_CSRF_CHECK", False)
    monkeypatch.setattr(cfg, "PAYMONGO_WEBHOOK_SECRET", "")
    monkeypatch.setattr(cfg, "ADMIN_EMAILS", [])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def paymongo():
    return FakePayMongo()


@pytest.fixture
async def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "growlokal-test.db")
    monkeypatch.setattr(cfg, "DB_PATH", path)
    await init_all_tables(path)
    return path


@pytest.fixture
def make_account(db_path, clock):
    async def _make(email="maria@example.com", password=STRONG_PASSWORD,
                    verified=True, name="Maria Santos"):
        store = AccountStore(db_path, clock)
        return await store.create(name, email, hash_password(password), email_verified=verified)
    return _make


@pytest.fixture
def make_product(db_path, clock):
    async def _make(name="Abaca Tote", price=450.0, stock=5, **kwargs):
        return await ProductStore(db_path, clock).add(name, price, stock, **kwargs)
    return _make


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────
@pytest.fixture
def http_db(tmp_path, monkeypatch):
    path = str(tmp_path / "growlokal-http.db")
    monkeypatch.setattr(cfg, "DB_PATH", path)
    return path


@pytest.fixture
def client(http_db, mailer, paymongo):
    from growlokal.auth import get_mailer
    from growlokal.main import app
    from growlokal.payment import PaymentReconciler, get_reconciler
    from growlokal.paymongo import PayMongoClient

    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_reconciler] = lambda: PaymentReconciler(
        gateway=PayMongoClient(secret_key="sk_test_123", transport=httpx.MockTransport(paymongo))
    )
    with TestClient(app) as c:
        token = c.get("/api/auth/csrf-token").json()["csrf_token"]
        c.headers[cfg.CSRF_HEADER] = token
        yield c
    app.dependency_overrides.clear()


def run(coro):
    """Drive a coroutine from a sync (TestClient) test."""
    return asyncio.run(coro)
