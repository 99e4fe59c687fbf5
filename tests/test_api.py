import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

import api.dependencies as deps
from application.services.token_service import TokenService
from main import app


@pytest_asyncio.fixture
async def client(monkeypatch, uow_factory, service, webhooks, users):
    # route authentication lookups through the per-test database
    monkeypatch.setattr(deps, "SQLAlchemyUnitOfWork", lambda readonly=False: uow_factory(readonly))
    app.dependency_overrides[deps.get_payment_service] = lambda: service
    app.dependency_overrides[deps.get_webhook_service] = lambda: webhooks
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _auth(user, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {TokenService().create_access_token(user, **kwargs)}"}


def _card_payload(amount="50.00") -> dict:
    return {
        "amount": amount,
        "currency": "GBP",
        "market": "GB",
        "card": {"number": "4242424242424242", "expiry_month": 12, "expiry_year": 2030, "cvv": "123"},
        "billing_address": {"country": "GB"},
    }


@pytest.mark.asyncio
async def test_methods_and_countries_are_public(client):
    resp = await client.get("/api/v1/payments/methods", params={"market": "US"})
    assert resp.status_code == 200
    methods = [m["method"] for m in resp.json()["data"]]
    assert "klarna" in methods

    resp = await client.get("/api/v1/payments/countries")
    assert {"code": "GB", "name": "United Kingdom", "currency": "GBP"} in resp.json()["data"]


@pytest.mark.asyncio
async def test_fee_quote(client):
    resp = await client.post(
        "/api/v1/payments/fees/quote", json={"amount": "100.00", "payment_method": "card", "market": "GB"}
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert Decimal(data["total"]) == Decimal("3.20")
    assert Decimal(data["net_amount"]) == Decimal("96.80")


@pytest.mark.asyncio
async def test_exchange_quote(client):
    resp = await client.post(
        "/api/v1/payments/exchange", json={"amount": "100", "from_currency": "GBP", "to_currency": "USD"}
    )
    assert Decimal(resp.json()["data"]["exchanged_amount"]) == Decimal("127.00")


@pytest.mark.asyncio
async def test_authentication_required(client):
    resp = await client.post("/api/v1/payments/card", json=_card_payload())
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"

    resp = await client.get("/api/v1/payments", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_expired_token_rejected(client, users):
    resp = await client.get("/api/v1/payments", headers=_auth(users["buyer"], expires_in=timedelta(seconds=-5)))
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_card_payment_and_history(client, users):
    headers = _auth(users["buyer"])
    resp = await client.post("/api/v1/payments/card", json=_card_payload(), headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    payment = body["data"]["payment"]
    assert payment["status"] == "completed"
    assert body["data"]["order"]["payment_id"] == payment["id"]
    assert "X-Request-ID" in resp.headers

    resp = await client.get("/api/v1/payments", headers=headers)
    page = resp.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["id"] == payment["id"]

    resp = await client.get(f"/api/v1/payments/{payment['id']}", headers=_auth(users["other"]))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_card_decline_is_payment_required(client, users, card_authorizer):
    card_authorizer.approved = False
    resp = await client.post("/api/v1/payments/card", json=_card_payload(), headers=_auth(users["buyer"]))
    assert resp.status_code == 402
    assert resp.json()["error"]["type"] == "CardDeclined"


@pytest.mark.asyncio
async def test_invalid_amount_rejected(client, users):
    resp = await client.post("/api/v1/payments/card", json=_card_payload("0"), headers=_auth(users["buyer"]))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_refund_requires_admin(client, users):
    created = await client.post("/api/v1/payments/card", json=_card_payload(), headers=_auth(users["buyer"]))
    payment_id = created.json()["data"]["payment"]["id"]

    resp = await client.post(
        f"/api/v1/payments/{payment_id}/refunds", json={"amount": "10.00"}, headers=_auth(users["buyer"])
    )
    assert resp.status_code == 403

    resp = await client.post(
        f"/api/v1/payments/{payment_id}/refunds", json={"amount": "10.00"}, headers=_auth(users["admin"])
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "partially_refunded"


@pytest.mark.asyncio
async def test_paypal_create_and_capture(client, users):
    headers = _auth(users["buyer"])
    resp = await client.post("/api/v1/payments/paypal/orders", json={"amount": "20.00"}, headers=headers)
    assert resp.status_code == 200
    created = resp.json()["data"]

    resp = await client.post(f"/api/v1/payments/paypal/orders/{created['gateway_order_id']}/capture", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Payment captured"
    assert resp.json()["data"]["payment"]["status"] == "completed"


@pytest.mark.asyncio
async def test_webhook_ack(client):
    event = {"id": "WH-API", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {}}
    resp = await client.post(
        "/api/v1/payments/webhooks/paypal",
        content=json.dumps(event),
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "ignored"


@pytest.mark.asyncio
async def test_webhook_transient_failure_returns_503(client):
    class FailingWebhooks:
        async def handle(self, headers, body):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    app.dependency_overrides[deps.get_webhook_service] = lambda: FailingWebhooks()
    resp = await client.post(
        "/api/v1/payments/webhooks/paypal",
        content=json.dumps({"id": "WH-X", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}),
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 503
    assert resp.json()["error"]["type"] == "ServiceUnavailable"


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.json()["data"] == {"status": "healthy", "redis": "disabled"}
