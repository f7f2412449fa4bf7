from datetime import timedelta
from typing import Optional

import httpx
import pytest
from fastapi import Header

from pixcheckout.checkout import CheckoutRegistry
from pixcheckout.config import settings
from pixcheckout.events import CheckoutEvent
from pixcheckout.main import app
from pixcheckout.routers import checkout as checkout_router
from pixcheckout.storage import PaymentStore
from pixcheckout.timer import utcnow

from conftest import FakeShop, make_api

HEADERS = {"X-API-KEY": "test-key", "X-Client-Id": "browser-1"}

ORDER = {
    "cart": {"items": [{"product_id": "acc-1", "name": "Full access account", "quantity": 1, "price": 49.9}]},
    "customer": {"first_name": "Ana", "last_name": "Souza", "email": "ana@example.com", "cpf": "123.456.789-01"},
    "payment_method": "pix",
}


@pytest.fixture
def shop():
    return FakeShop(expires_at=utcnow() + timedelta(minutes=30))


@pytest.fixture
async def sessions():
    registry = CheckoutRegistry()
    yield registry
    await registry.close_all()


@pytest.fixture
async def client(shop, store, sessions):
    def override_store(x_client_id: Optional[str] = Header(default=None)):
        return PaymentStore(store.session_factory, namespace=f"{x_client_id}:" if x_client_id else "")

    app.dependency_overrides[checkout_router.get_registry] = lambda: sessions
    app.dependency_overrides[checkout_router.get_shop_api] = lambda: make_api(shop)
    app.dependency_overrides[checkout_router.get_store] = override_store
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://checkout.test") as c:
        yield c
    app.dependency_overrides.clear()


async def test_service_key_is_required(client):
    resp = await client.post("/checkout/orders", json=ORDER)
    assert resp.status_code == 401

    resp = await client.post("/checkout/orders", json=ORDER, headers={"X-API-KEY": "wrong"})
    assert resp.status_code == 401


async def test_invalid_customer_is_rejected(client, shop):
    bad = {**ORDER, "customer": {**ORDER["customer"], "email": "ana.example.com"}}

    resp = await client.post("/checkout/orders", json=bad, headers=HEADERS)

    assert resp.status_code == 422
    assert resp.json()["detail"]["field"] == "email"
    assert shop.paths == []


async def test_pix_flow(client):
    resp = await client.post("/checkout/orders", json=ORDER, headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["order_id"] == "ord-1"
    assert body["payment"]["pixCopiaECola"] == "00020126-real"

    state = (await client.get("/checkout/ord-1", headers=HEADERS)).json()
    assert state["state"] == "idle"
    assert state["countdown"] in ("30:00", "29:59")
    assert not state["is_paid"]

    pending = (await client.post("/checkout/ord-1/verify", headers=HEADERS)).json()
    assert pending["state"] == "idle"
    assert pending["notice"]["level"] == "info"

    paid = (await client.post("/checkout/ord-1/verify", headers=HEADERS)).json()
    assert paid["state"] == "paid"

    state = (await client.get("/checkout/ord-1", headers=HEADERS)).json()
    assert state["is_paid"]
    assert state["redirect_url"] == settings.success_redirect_url


async def test_failed_order_maps_to_bad_gateway(client, shop):
    shop.order_response = httpx.Response(500, json={"error": "Stock unavailable"})

    resp = await client.post("/checkout/orders", json=ORDER, headers=HEADERS)

    assert resp.status_code == 502
    assert resp.json()["detail"] == "Stock unavailable"


async def test_card_checkout_is_not_tracked(client):
    resp = await client.post("/checkout/orders", json={**ORDER, "payment_method": "card"}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["checkout_url"] == "https://pay.example/checkout/abc"
    assert (await client.get("/checkout/ord-1", headers=HEADERS)).status_code == 404


async def test_unknown_checkout(client):
    assert (await client.get("/checkout/nope", headers=HEADERS)).status_code == 404
    assert (await client.post("/checkout/nope/verify", headers=HEADERS)).status_code == 404


async def test_resume_prefers_the_live_session(client, sessions):
    await client.post("/checkout/orders", json=ORDER, headers=HEADERS)
    live = sessions.get("ord-1")

    resp = await client.post("/checkout/resume", headers=HEADERS)

    assert resp.json()["action"] == "resume"
    assert resp.json()["order_id"] == "ord-1"
    assert sessions.get("ord-1") is live


async def test_resume_is_scoped_to_the_client(client):
    await client.post("/checkout/orders", json=ORDER, headers=HEADERS)

    resp = await client.post("/checkout/resume", headers={**HEADERS, "X-Client-Id": "browser-2"})

    assert resp.json()["action"] == "none"
    assert resp.json()["redirect_url"] == settings.cart_redirect_url


async def test_lifecycle_and_clicks(client):
    await client.post("/checkout/orders", json=ORDER, headers=HEADERS)

    resp = await client.post("/checkout/ord-1/lifecycle", json={"signal": "page_restored"}, headers=HEADERS)
    assert resp.status_code == 200
    assert not resp.json()["reset_check"]

    resp = await client.post("/checkout/ord-1/lifecycle", json={"signal": "sideways"}, headers=HEADERS)
    assert resp.status_code == 422

    for at_ms in (0, 50, 100, 150, 200):
        resp = await client.post("/checkout/ord-1/clicks", json={"at_ms": at_ms}, headers=HEADERS)
        assert resp.status_code == 200


async def test_cancel(client, store):
    await client.post("/checkout/orders", json=ORDER, headers=HEADERS)

    resp = await client.delete("/checkout/ord-1", headers=HEADERS)

    assert resp.json() == {"status": "cancelled"}
    assert (await client.get("/checkout/ord-1", headers=HEADERS)).status_code == 404
    browser = PaymentStore(store.session_factory, namespace="browser-1:")
    assert await browser.load() == (None, None)


async def test_new_order_supersedes_the_previous_one(client, sessions, shop, store):
    await client.post("/checkout/orders", json=ORDER, headers=HEADERS)
    old = sessions.get("ord-1")

    shop.order_response = httpx.Response(201, json={"orderId": "ord-2"})
    resp = await client.post("/checkout/orders", json=ORDER, headers=HEADERS)
    assert resp.json()["order_id"] == "ord-2"

    assert sessions.find("ord-1") is None
    assert old.verifier.closed
    assert (await client.get("/checkout/ord-1", headers=HEADERS)).status_code == 404

    # a late confirmation of the abandoned order leaves the new payment in place
    await old.bus.publish(CheckoutEvent.PAYMENT_CONFIRMED, old.payment)
    browser = PaymentStore(store.session_factory, namespace="browser-1:")
    assert (await browser.load())[0] == "ord-2"

    resumed = (await client.post("/checkout/resume", headers=HEADERS)).json()
    assert resumed["action"] == "resume"
    assert resumed["order_id"] == "ord-2"


async def test_other_clients_keep_their_sessions(client, sessions, shop):
    await client.post("/checkout/orders", json=ORDER, headers=HEADERS)

    shop.order_response = httpx.Response(201, json={"orderId": "ord-2"})
    await client.post("/checkout/orders", json=ORDER, headers={**HEADERS, "X-Client-Id": "browser-2"})

    assert sessions.find("ord-1") is not None
    assert sessions.find("ord-2") is not None
