import json
from decimal import Decimal

import pytest

from application.dtos.payments import CreatePayPalOrder, RefundCreate
from application.services.webhook_service import normalize_event_type
from domain.payment.entity import PaymentStatus


def _body(event_type: str, resource: dict, event_id: str = "WH-1") -> bytes:
    return json.dumps({"id": event_id, "event_type": event_type, "resource": resource}).encode()


def _completed(capture_id: str, order_id: str) -> dict:
    return {
        "id": capture_id,
        "status": "COMPLETED",
        "amount": {"value": "20.00", "currency_code": "USD"},
        "supplementary_data": {"related_ids": {"order_id": order_id}},
    }


async def _pending_order(service, users):
    return await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))


async def _captured(service, users):
    created = await _pending_order(service, users)
    await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    return created


def test_event_type_normalisation():
    assert normalize_event_type("PAYMENT.CAPTURE.COMPLETED") == "CAPTURE.COMPLETED"
    assert normalize_event_type("capture.denied") == "CAPTURE.DENIED"


@pytest.mark.asyncio
async def test_capture_completed_before_capture_call(webhooks, service, users):
    created = await _pending_order(service, users)

    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed("CAP-WH", created.gateway_order_id)))
    assert ack.status == "processed"

    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.transaction_id == "CAP-WH"
    assert payment.order_id is not None
    assert payment.status_history[-1].performed_by == "gateway"

    # the buyer's own capture call afterwards is a no-op returning the same order
    again = await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    assert again.order.id == payment.order_id


@pytest.mark.asyncio
async def test_capture_completed_is_idempotent(webhooks, service, users):
    created = await _captured(service, users)
    capture_id = f"CAP-{created.gateway_order_id}"

    first = await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed(capture_id, created.gateway_order_id), "WH-A"))
    second = await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed(capture_id, created.gateway_order_id), "WH-B"))
    assert first.status == "ignored"
    assert second.status == "ignored"

    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert [h.status for h in payment.status_history] == [PaymentStatus.PENDING, PaymentStatus.COMPLETED]


@pytest.mark.asyncio
async def test_capture_completed_for_different_capture_is_ignored(webhooks, service, users):
    created = await _captured(service, users)
    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed("CAP-OTHER", created.gateway_order_id)))
    assert ack.status == "ignored"
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.transaction_id == f"CAP-{created.gateway_order_id}"


@pytest.mark.asyncio
async def test_denied_fails_pending_payment(webhooks, service, users):
    created = await _pending_order(service, users)
    resource = {
        "id": "CAP-DENIED",
        "status": "DECLINED",
        "status_details": {"reason": "RISK_REJECTED"},
        "supplementary_data": {"related_ids": {"order_id": created.gateway_order_id}},
    }
    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.DENIED", resource))
    assert ack.status == "processed"
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "RISK_REJECTED"


@pytest.mark.asyncio
async def test_late_denied_does_not_downgrade_completed(webhooks, service, users):
    created = await _captured(service, users)
    resource = {
        "id": f"CAP-{created.gateway_order_id}",
        "status": "DECLINED",
        "supplementary_data": {"related_ids": {"order_id": created.gateway_order_id}},
    }
    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.DENIED", resource))
    assert ack.status == "ignored"
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_refund_event_applies_once(webhooks, service, users):
    created = await _captured(service, users)
    capture_id = f"CAP-{created.gateway_order_id}"
    resource = {
        "id": "REFUND-1",
        "status": "COMPLETED",
        "amount": {"value": "5.00", "currency_code": "USD"},
        "links": [{"href": f"https://api-m.sandbox.paypal.com/v2/payments/captures/{capture_id}", "rel": "up"}],
    }

    first = await webhooks.handle({}, _body("PAYMENT.CAPTURE.REFUNDED", resource, "WH-R1"))
    second = await webhooks.handle({}, _body("PAYMENT.CAPTURE.REFUNDED", resource, "WH-R2"))
    assert first.status == "processed"
    assert second.status == "ignored"

    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert payment.total_refunded == Decimal("5.00")
    assert len(payment.refunds) == 1


@pytest.mark.asyncio
async def test_refund_event_after_admin_refund_is_not_double_counted(webhooks, service, users):
    created = await _captured(service, users)
    refunded = await service.refund_payment(users["admin"], created.payment_id, RefundCreate(amount=Decimal("20.00")))
    refund_id = refunded.refunds[0].gateway_refund_id

    resource = {
        "id": refund_id,
        "status": "COMPLETED",
        "capture_id": f"CAP-{created.gateway_order_id}",
        "amount": {"value": "20.00", "currency_code": "USD"},
    }
    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.REFUNDED", resource))
    assert ack.status == "ignored"

    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.total_refunded == Decimal("20.00")


@pytest.mark.asyncio
async def test_dispute_then_reversal(webhooks, service, users):
    created = await _captured(service, users)
    capture_id = f"CAP-{created.gateway_order_id}"

    dispute = {
        "dispute_id": "PP-D-1",
        "reason": "MERCHANDISE_OR_SERVICE_NOT_RECEIVED",
        "disputed_transactions": [{"seller_transaction_id": capture_id}],
    }
    assert (await webhooks.handle({}, _body("CUSTOMER.DISPUTE.CREATED", dispute, "WH-D1"))).status == "processed"
    assert (await webhooks.handle({}, _body("CUSTOMER.DISPUTE.CREATED", dispute, "WH-D2"))).status == "ignored"
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.DISPUTED

    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.REVERSED", {"id": capture_id}, "WH-REV"))
    assert ack.status == "processed"
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.CHARGEBACK


@pytest.mark.asyncio
async def test_unknown_type_and_lookup_miss_are_ignored(webhooks):
    assert (await webhooks.handle({}, _body("CHECKOUT.ORDER.APPROVED", {"id": "X"}))).status == "ignored"
    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed("CAP-NONE", "ORDER-NONE"), "WH-M"))
    assert ack.status == "ignored"


@pytest.mark.asyncio
async def test_invalid_json_is_ignored(webhooks):
    assert (await webhooks.handle({}, b"not json")).status == "ignored"
    assert (await webhooks.handle({}, b"[1, 2]")).status == "ignored"


@pytest.mark.asyncio
async def test_duplicate_delivery_short_circuits(webhooks, service, users, delivery_cache):
    created = await _pending_order(service, users)
    body = _body("PAYMENT.CAPTURE.COMPLETED", _completed("CAP-DUP", created.gateway_order_id), "WH-DUP")

    assert (await webhooks.handle({}, body)).status == "processed"
    assert (await webhooks.handle({}, body)).status == "duplicate"
    assert len(delivery_cache.keys) == 1


@pytest.mark.asyncio
async def test_rejected_signature_changes_nothing(webhooks, service, users, verifier):
    verifier.result = False
    created = await _pending_order(service, users)

    ack = await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed("CAP-X", created.gateway_order_id)))
    assert ack.status == "rejected"
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_failed_dispatch_releases_dedupe_key(webhooks, delivery_cache, monkeypatch):
    async def boom(handler, resource):
        raise ConnectionError("database unavailable")

    monkeypatch.setattr(webhooks, "_dispatch", boom)
    with pytest.raises(ConnectionError):
        await webhooks.handle({}, _body("PAYMENT.CAPTURE.COMPLETED", _completed("CAP-1", "ORDER-1")))
    assert delivery_cache.keys == {}
