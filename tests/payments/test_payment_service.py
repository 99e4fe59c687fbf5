import json
from decimal import Decimal

import pytest

from application.dtos.payments import (
    CaptureResult,
    CardDetails,
    CreateCardPayment,
    CreatePayPalOrder,
    OrderItem,
    PaymentListQuery,
    RefundCreate,
)
from core.exceptions import ForbiddenException
from domain.common.exceptions import UserInactiveException
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import (
    AlreadyProcessedError,
    CardDeclinedError,
    ExceedsRefundableAmountError,
    NotRefundableError,
    PaymentNotFoundError,
    PaymentValidationError,
    UpstreamError,
    UpstreamProtocolError,
)


def _card(**overrides) -> CreateCardPayment:
    data = dict(
        amount=Decimal("50.00"),
        card=CardDetails(number="4242 4242 4242 4242", expiry_month=12, expiry_year=2030, cvv="123"),
        billing_address={"country": "GB"},
    )
    data.update(overrides)
    return CreateCardPayment(**data)


async def _count(service, user_id) -> int:
    _, total = await service.list_payments(user_id, PaymentListQuery())
    return total


@pytest.mark.asyncio
async def test_create_paypal_order_rejects_non_positive_amount(service, paypal, users):
    with pytest.raises(PaymentValidationError):
        await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("0")))
    assert paypal.created == []
    assert await _count(service, users["buyer"].id) == 0


@pytest.mark.asyncio
async def test_create_paypal_order_converts_to_settlement_currency(service, paypal, users):
    created = await service.create_paypal_order(
        users["buyer"].id,
        CreatePayPalOrder(
            subtotal=Decimal("100.00"),
            currency="GBP",
            items=[OrderItem(name="Poster", quantity=2, price=Decimal("50.00"))],
        ),
    )
    assert created.approval_url.startswith("https://www.sandbox.paypal.com/checkoutnow")
    assert created.amount.exchange_rate == Decimal("1.27")
    assert created.amount.settlement_currency == "USD"

    order = paypal.created[0]
    assert order.currency == "USD"
    assert order.item_total == Decimal("127.00")
    assert order.tax_total == Decimal("25.40")
    assert order.amount == Decimal("152.40")
    assert order.locale == "en-GB"

    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.currency == "USD"
    assert payment.amount == Decimal("152.40")
    assert payment.gateway_order_id == created.gateway_order_id


@pytest.mark.asyncio
async def test_create_paypal_order_rejects_mismatched_items(service, paypal, users):
    with pytest.raises(PaymentValidationError):
        await service.create_paypal_order(
            users["buyer"].id,
            CreatePayPalOrder(amount=Decimal("10.00"), items=[OrderItem(name="Mug", price=Decimal("9.00"))]),
        )
    assert paypal.created == []


@pytest.mark.asyncio
async def test_create_paypal_order_without_approval_link(service, paypal, users):
    paypal.include_approve_link = False
    with pytest.raises(UpstreamProtocolError):
        await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("10.00")))
    assert await _count(service, users["buyer"].id) == 0


@pytest.mark.asyncio
async def test_inactive_user_cannot_pay(service, users):
    with pytest.raises(UserInactiveException):
        await service.create_paypal_order(users["inactive"].id, CreatePayPalOrder(amount=Decimal("10.00")))


@pytest.mark.asyncio
async def test_capture_is_idempotent(service, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))

    first = await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    second = await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)

    assert first.payment.status == PaymentStatus.COMPLETED
    assert first.payment.transaction_id == f"CAP-{created.gateway_order_id}"
    assert first.order is not None
    assert second.order.id == first.order.id
    assert second.payment.transaction_id == first.payment.transaction_id
    assert len(paypal.captures) == 1
    assert [h.status for h in second.payment.status_history] == [PaymentStatus.PENDING, PaymentStatus.COMPLETED]


@pytest.mark.asyncio
async def test_capture_unknown_or_foreign_order(service, users):
    with pytest.raises(PaymentNotFoundError):
        await service.capture_paypal_order(users["buyer"].id, "NOPE")

    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))
    with pytest.raises(PaymentNotFoundError):
        await service.capture_paypal_order(users["other"].id, created.gateway_order_id)


@pytest.mark.asyncio
async def test_capture_pending_keeps_order_unmaterialised(service, paypal, users):
    paypal.capture_status = "PENDING"
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))
    result = await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    assert result.payment.status == PaymentStatus.CAPTURING
    assert result.order is None


@pytest.mark.asyncio
async def test_capture_already_processed_and_not_captured(service, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))
    paypal.capture_error = UpstreamError(
        "Order already captured", provider="paypal", status_code=422, issue="ORDER_ALREADY_CAPTURED"
    )
    with pytest.raises(AlreadyProcessedError):
        await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)


@pytest.mark.asyncio
async def test_capture_already_processed_recovers_captured_state(service, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))
    order_id = created.gateway_order_id
    paypal.capture_error = UpstreamError(
        "Order already captured", provider="paypal", status_code=422, issue="ORDER_ALREADY_CAPTURED"
    )
    paypal.order_state[order_id] = CaptureResult(
        order_id=order_id, status="COMPLETED", capture_id="CAP-EARLIER", capture_status="COMPLETED"
    )
    result = await service.capture_paypal_order(users["buyer"].id, order_id)
    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.payment.transaction_id == "CAP-EARLIER"


@pytest.mark.asyncio
async def test_capture_gateway_failure_leaves_payment_pending(service, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("20.00")))
    paypal.capture_error = UpstreamError("Service unavailable", provider="paypal", status_code=503, retryable=True)
    with pytest.raises(UpstreamError):
        await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_card_decline_persists_nothing(service, card_authorizer, users):
    card_authorizer.approved = False
    with pytest.raises(CardDeclinedError):
        await service.create_card_payment(users["buyer"].id, _card())
    assert await _count(service, users["buyer"].id) == 0


@pytest.mark.asyncio
async def test_card_payment_completes_with_order(service, card_authorizer, users):
    result = await service.create_card_payment(users["buyer"].id, _card())
    payment = result.payment
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.transaction_id.startswith("SIM-")
    assert payment.gateway_fee.total == Decimal("1.75")
    assert payment.net_amount == Decimal("48.25")
    assert result.order is not None
    assert payment.order_id == result.order.id
    assert card_authorizer.requests[0].card_number == "4242424242424242"


@pytest.mark.asyncio
async def test_refund_sequence_on_card_payment(service, users):
    payment = (await service.create_card_payment(users["buyer"].id, _card())).payment
    admin = users["admin"]

    after_first = await service.refund_payment(admin, payment.id, RefundCreate(amount=Decimal("30.00")))
    assert after_first.status == PaymentStatus.PARTIALLY_REFUNDED
    assert after_first.refunds[0].status == "pending"

    after_second = await service.refund_payment(admin, payment.id, RefundCreate(amount=Decimal("20.00")))
    assert after_second.status == PaymentStatus.REFUNDED
    assert after_second.total_refunded == Decimal("50.00")

    with pytest.raises(ExceedsRefundableAmountError):
        await service.refund_payment(admin, payment.id, RefundCreate(amount=Decimal("1.00")))


@pytest.mark.asyncio
async def test_refund_requires_admin(service, users):
    payment = (await service.create_card_payment(users["buyer"].id, _card())).payment
    with pytest.raises(ForbiddenException):
        await service.refund_payment(users["buyer"], payment.id, RefundCreate(amount=Decimal("5.00")))


@pytest.mark.asyncio
async def test_refund_outside_window(service, clock, users):
    payment = (await service.create_card_payment(users["buyer"].id, _card())).payment
    clock.advance(days=91)
    with pytest.raises(NotRefundableError):
        await service.refund_payment(users["admin"], payment.id, RefundCreate(amount=Decimal("5.00")))


@pytest.mark.asyncio
async def test_paypal_refund_goes_through_gateway(service, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("40.00")))
    await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)

    refunded = await service.refund_payment(users["admin"], created.payment_id, RefundCreate(amount=Decimal("10.00")))
    assert refunded.status == PaymentStatus.PARTIALLY_REFUNDED
    assert refunded.refunds[0].gateway_refund_id is not None
    assert refunded.refunds[0].status == "completed"
    assert paypal.refunds[0]["capture_id"] == f"CAP-{created.gateway_order_id}"


@pytest.mark.asyncio
async def test_refund_of_pending_payment_skips_gateway(service, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("40.00")))
    with pytest.raises(NotRefundableError):
        await service.refund_payment(users["admin"], created.payment_id, RefundCreate(amount=Decimal("10.00")))
    assert paypal.refunds == []


@pytest.mark.asyncio
async def test_get_payment_visibility(service, users):
    payment = (await service.create_card_payment(users["buyer"].id, _card())).payment
    assert (await service.get_payment(users["admin"], payment.id)).id == payment.id
    with pytest.raises(ForbiddenException):
        await service.get_payment(users["other"], payment.id)


@pytest.mark.asyncio
async def test_list_payments_filters_and_paginates(service, users):
    buyer = users["buyer"].id
    for _ in range(3):
        await service.create_card_payment(buyer, _card())
    await service.create_paypal_order(buyer, CreatePayPalOrder(amount=Decimal("10.00")))

    items, total = await service.list_payments(buyer, PaymentListQuery(page=1, size=2))
    assert total == 4
    assert len(items) == 2

    cards, total = await service.list_payments(buyer, PaymentListQuery(payment_method="card"))
    assert total == 3
    assert all(p.payment_method == "card" for p in cards)

    _, other_total = await service.list_payments(users["other"].id, PaymentListQuery())
    assert other_total == 0


@pytest.mark.asyncio
async def test_expire_stale_pending(service, clock, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("10.00")))
    assert await service.expire_stale_pending() == 0

    clock.advance(minutes=181)
    assert await service.expire_stale_pending() == 1
    payment = await service.get_payment(users["buyer"], created.payment_id)
    assert payment.status == PaymentStatus.CANCELLED


@pytest.mark.asyncio
async def test_late_capture_completes_expired_payment(service, paypal, clock, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("10.00")))
    clock.advance(minutes=181)
    assert await service.expire_stale_pending() == 1

    # the buyer approved just before the sweep; PayPal still captures the funds
    result = await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.payment.transaction_id == f"CAP-{created.gateway_order_id}"
    assert result.order is not None
    assert [h.status for h in result.payment.status_history] == [
        PaymentStatus.PENDING,
        PaymentStatus.CANCELLED,
        PaymentStatus.COMPLETED,
    ]
    assert len(paypal.captures) == 1


@pytest.mark.asyncio
async def test_late_pending_capture_keeps_expired_payment_cancelled(service, paypal, clock, users):
    paypal.capture_status = "PENDING"
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("10.00")))
    clock.advance(minutes=181)
    await service.expire_stale_pending()

    result = await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    assert result.payment.status == PaymentStatus.CANCELLED
    assert result.order is None


@pytest.mark.asyncio
async def test_capture_of_failed_payment_is_already_processed(service, webhooks, paypal, users):
    created = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("10.00")))
    denied = {
        "id": "CAP-DENIED",
        "status": "DECLINED",
        "supplementary_data": {"related_ids": {"order_id": created.gateway_order_id}},
    }
    body = json.dumps({"id": "WH-DENY", "event_type": "PAYMENT.CAPTURE.DENIED", "resource": denied}).encode()
    assert (await webhooks.handle({}, body)).status == "processed"

    with pytest.raises(AlreadyProcessedError):
        await service.capture_paypal_order(users["buyer"].id, created.gateway_order_id)
    assert paypal.captures == []
