import os
import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

# settings are read at import time
os.environ.setdefault("SERVICE_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTO_VERIFY", "false")
os.environ.setdefault("REALTIME_URL", "")

from pixcheckout.db import init_db, make_engine, make_session_factory
from pixcheckout.schemas import Cart, CartItem, Coupon, Customer, PixPayment, StatusResult
from pixcheckout.services.shop_api import ShopApiClient
from pixcheckout.storage import PaymentStore

T0 = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class StubApi:
    """Status endpoint whose answers the test releases one by one."""

    def __init__(self, results=None):
        self.calls = 0
        self.results = list(results or [])
        self.gate = None

    async def check_status(self, order_id, payment_id=None):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if not self.results:
            return StatusResult()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(engine)
    yield PaymentStore(make_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def cart():
    return Cart(items=[
        CartItem(product_id="acc-1", name="Full access account", quantity=1, price=49.90),
        CartItem(product_id="acc-2", variant_id="vip", quantity=2, price=15.00),
    ])


@pytest.fixture
def coupon_cart(cart):
    cart.coupon = Coupon(code="BLACK10", discount_amount=10.0)
    return cart


@pytest.fixture
def customer():
    return Customer(first_name="Ana", last_name="Souza", email="ana@example.com", cpf="123.456.789-01")


@pytest.fixture
def payment(clock):
    return PixPayment(
        order_id="ord-1",
        payment_id="pay-1",
        pix_copia_e_cola="000201-real-code",
        qr_code_base64="aGVsbG8=",
        expires_at=(clock() + timedelta(minutes=30)).isoformat(),
        total=79.90,
    )


def make_api(handler) -> ShopApiClient:
    return ShopApiClient(
        base_url="http://shop.test/api",
        api_key="shop-key",
        timeout=1.0,
        status_timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


async def settle(rounds: int = 5):
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeChannel:
    """Stands in for a confirmation channel; records how it was driven."""

    def __init__(self, name="fake", fail=False):
        self.name = name
        self.fail = fail
        self.sink = None
        self.opened = 0
        self.closed = 0
        self._alive = False

    @property
    def alive(self):
        return self._alive

    async def open(self, sink):
        from pixcheckout.channels import ChannelUnavailable

        self.opened += 1
        if self.fail:
            raise ChannelUnavailable(f"{self.name} unavailable")
        self.sink = sink
        self._alive = True

    async def close(self):
        self.closed += 1
        self._alive = False


class FakeShop:
    """Shop backend answering every endpoint the checkout consumes."""

    def __init__(self, pending_checks=1, order_response=None, card_response=None, expires_at=None):
        self.pending_checks = pending_checks
        self.order_response = order_response or httpx.Response(201, json={"orderId": "ord-1"})
        self.card_response = card_response or httpx.Response(200, json={
            "checkoutUrl": "https://pay.example/checkout/abc",
            "preferenceId": "pref-1",
        })
        self.expires_at = expires_at or T0 + timedelta(minutes=30)
        self.status_calls = 0
        self.paths = []

    def __call__(self, request: httpx.Request):
        path = request.url.path
        self.paths.append(path)
        if path == "/api/orders/create":
            return self.order_response
        if path == "/api/payment/pix":
            return httpx.Response(200, json={
                "paymentId": "pay-1",
                "pixCopiaECola": "00020126-real",
                "qrCodeBase64": "iVBORw0KGgo=",
                "expiresAt": self.expires_at.isoformat(),
                "total": 79.9,
            })
        if path == "/api/payment/card":
            return self.card_response
        if path == "/api/payment/check-status":
            self.status_calls += 1
            paid = self.status_calls > self.pending_checks
            return httpx.Response(200, json={"isPaid": paid, "status": "approved" if paid else "pending"})
        return httpx.Response(404, json={"error": "not found"})
