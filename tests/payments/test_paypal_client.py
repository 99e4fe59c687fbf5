import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import PayPalItemRequest, PayPalOrderRequest
from core.settings import PaymentRetry, PaymentSettings, PayPalSettings
from domain.payment.exceptions import UpstreamError, UpstreamProtocolError
from infrastructure.external.payments.paypal_client import PayPalClient, build_order_body


WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api-m.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-01T12:00:00Z",
}


def _settings(**paypal) -> PaymentSettings:
    return PaymentSettings(
        paypal=PayPalSettings(client_id="cid", client_secret="secret", webhook_id="WH-ID", **paypal),
        retry=PaymentRetry(max=2, base_backoff=0.01),
    )


def _order(**overrides) -> PayPalOrderRequest:
    data = dict(
        reference_id="TEMP-1-ABC",
        currency="USD",
        amount=Decimal("152.40"),
        item_total=Decimal("127.00"),
        tax_total=Decimal("25.40"),
        items=[PayPalItemRequest(name="Poster", quantity=2, unit_amount=Decimal("63.50"))],
        description="Order from Test",
        brand_name="Test",
        return_url="https://shop.test/ok",
        cancel_url="https://shop.test/cancel",
        locale="en-GB",
    )
    data.update(overrides)
    return PayPalOrderRequest(**data)


class Recorder:
    """MockTransport handler routing by path and recording requests."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes[request.url.path]
        return handler(request) if callable(handler) else handler

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def _token_response(request):
    return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})


def _client(recorder, **paypal) -> PayPalClient:
    return PayPalClient(_settings(**paypal), transport=httpx.MockTransport(recorder))


def test_order_body_breakdown_omits_zero_parts():
    body = build_order_body(_order())
    unit = body["purchase_units"][0]
    assert body["intent"] == "CAPTURE"
    assert unit["reference_id"] == unit["invoice_id"] == "TEMP-1-ABC"
    assert unit["amount"]["value"] == "152.40"
    assert set(unit["amount"]["breakdown"]) == {"item_total", "tax_total"}
    assert unit["items"][0]["quantity"] == "2"
    assert body["application_context"]["locale"] == "en-GB"


def test_client_requires_credentials():
    with pytest.raises(RuntimeError):
        PayPalClient(PaymentSettings(paypal=PayPalSettings()))


@pytest.mark.asyncio
async def test_create_order_caches_token_and_sends_request_id():
    created_body = {
        "id": "5O190127TN364715T",
        "status": "CREATED",
        "links": [
            {"href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T", "rel": "self"},
            {"href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T", "rel": "approve"},
        ],
    }
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v2/checkout/orders": httpx.Response(201, json=created_body),
    })
    client = _client(recorder)
    try:
        first = await client.create_order(_order())
        await client.create_order(_order(reference_id="TEMP-2-DEF"))
    finally:
        await client.aclose()

    assert first.id == "5O190127TN364715T"
    assert first.approval_url().endswith("token=5O190127TN364715T")
    assert recorder.paths().count("/v1/oauth2/token") == 1

    order_request = recorder.requests[1]
    assert order_request.headers["Authorization"] == "Bearer A21-token"
    assert order_request.headers["PayPal-Request-Id"] == "TEMP-1-ABC"
    assert json.loads(order_request.content)["purchase_units"][0]["amount"]["currency_code"] == "USD"


@pytest.mark.asyncio
async def test_capture_maps_first_capture_and_payer():
    captured = {
        "id": "ORDER-1",
        "status": "COMPLETED",
        "payer": {"payer_id": "P1", "email_address": "b@example.com", "name": {"given_name": "Pat", "surname": "Buyer"}},
        "purchase_units": [{
            "payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED", "amount": {"value": "20.00", "currency_code": "USD"}}]},
        }],
    }
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v2/checkout/orders/ORDER-1/capture": httpx.Response(201, json=captured),
    })
    client = _client(recorder)
    try:
        result = await client.capture_order("ORDER-1", request_id="capture-ORDER-1")
    finally:
        await client.aclose()

    assert result.is_captured
    assert result.capture_id == "CAP-1"
    assert result.amount == Decimal("20.00")
    assert result.payer.name == "Pat Buyer"


@pytest.mark.asyncio
async def test_unprocessable_entity_exposes_issue():
    error = {
        "name": "UNPROCESSABLE_ENTITY",
        "details": [{"issue": "ORDER_ALREADY_CAPTURED", "description": "Order already captured."}],
        "debug_id": "dbg-1",
    }
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v2/checkout/orders/ORDER-1/capture": httpx.Response(422, json=error),
    })
    client = _client(recorder)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await client.capture_order("ORDER-1", request_id="capture-ORDER-1")
    finally:
        await client.aclose()

    exc = exc_info.value
    assert exc.status_code == 422
    assert exc.issue == "ORDER_ALREADY_CAPTURED"
    assert exc.retryable is False
    assert exc.details["debug_id"] == "dbg-1"
    assert recorder.paths().count("/v2/checkout/orders/ORDER-1/capture") == 1


@pytest.mark.asyncio
async def test_transient_status_is_retried():
    responses = iter([httpx.Response(503), httpx.Response(200, json={"id": "ORDER-1", "status": "APPROVED"})])
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v2/checkout/orders/ORDER-1": lambda request: next(responses),
    })
    client = _client(recorder)
    try:
        result = await client.get_order("ORDER-1")
    finally:
        await client.aclose()

    assert result.status == "APPROVED"
    assert recorder.paths().count("/v2/checkout/orders/ORDER-1") == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_retryable_error():
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v2/checkout/orders/ORDER-1": httpx.Response(503),
    })
    client = _client(recorder)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await client.get_order("ORDER-1")
    finally:
        await client.aclose()
    assert exc_info.value.retryable is True
    assert recorder.paths().count("/v2/checkout/orders/ORDER-1") == 3


@pytest.mark.asyncio
async def test_create_without_id_is_protocol_error():
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v2/checkout/orders": httpx.Response(201, json={"status": "CREATED"}),
    })
    client = _client(recorder)
    try:
        with pytest.raises(UpstreamProtocolError):
            await client.create_order(_order())
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_verify_webhook_signature():
    def verify(request):
        payload = json.loads(request.content)
        assert payload["webhook_id"] == "WH-ID"
        assert payload["transmission_id"] == "tx-1"
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v1/notifications/verify-webhook-signature": verify,
    })
    client = _client(recorder)
    try:
        assert await client.verify_webhook_signature(WEBHOOK_HEADERS, {"id": "WH-1"}) is True
        assert await client.verify_webhook_signature({}, {"id": "WH-1"}) is False
    finally:
        await client.aclose()
    assert recorder.paths().count("/v1/notifications/verify-webhook-signature") == 1


@pytest.mark.asyncio
async def test_verify_webhook_signature_failure_status():
    recorder = Recorder({
        "/v1/oauth2/token": _token_response,
        "/v1/notifications/verify-webhook-signature": httpx.Response(200, json={"verification_status": "FAILURE"}),
    })
    client = _client(recorder)
    try:
        assert await client.verify_webhook_signature(WEBHOOK_HEADERS, {"id": "WH-1"}) is False
    finally:
        await client.aclose()
