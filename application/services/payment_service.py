"""
Application service orchestrating payment use-cases.

This class depends only on the application ports (PayPal gateway, card authorizer)
and the unit of work. Gateway implementations are provided by infrastructure and
injected from the composition root (API/tasks), keeping dependencies one-way.

Gateway calls never run inside an open database transaction: every use-case reads
what it needs, talks to the gateway, then re-reads and applies the result in a
fresh unit of work that is retried on optimistic-lock conflicts.
"""
from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from application.dtos.payments import (
    CaptureResult,
    CardAuthorizationRequest,
    CreateCardPayment,
    CreatePayPalOrder,
    OrderDTO,
    PayPalItemRequest,
    PayPalOrderCreated,
    PayPalOrderRequest,
    PaymentDTO,
    PaymentListQuery,
    PaymentWithOrder,
    PriceBreakdown,
    RefundCreate,
    SettlementAmount,
)
from application.ports.payment_gateway import CardAuthorizer, PayPalGateway
from core.exceptions import ForbiddenException
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import UserNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order
from domain.payment.entity import (
    Currency,
    Gateway,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PerformedBy,
    RefundStatus,
    generate_transaction_id,
    round2,
)
from domain.payment.events import (
    PaymentCancelled,
    PaymentCompleted,
    PaymentCreated,
    PaymentEvent,
    PaymentFailed,
    PaymentRefunded,
)
from domain.payment.exceptions import (
    AlreadyProcessedError,
    CardDeclinedError,
    ConcurrentUpdateError,
    PaymentNotFoundError,
    PaymentValidationError,
    UpstreamError,
    UpstreamProtocolError,
)
from domain.payment.gateway_data import CardData, PayPalData, PayPalLink, PayPalPayer, detect_card_brand
from domain.payment.pricing import compute_amount, exchange_rate, paypal_locale, refresh_derived_fields
from domain.user.entity import User
from shared.codes.payment_codes import PAYPAL_ALREADY_PROCESSED_ISSUES, PAYPAL_STATUS_TO_INTERNAL


logger = get_logger(__name__)

T = TypeVar("T")
UowFactory = Callable[..., AbstractUnitOfWork]

PAYPAL_REFUND_STATUS = {
    "COMPLETED": RefundStatus.COMPLETED,
    "PENDING": RefundStatus.PENDING,
    "FAILED": RefundStatus.FAILED,
    "CANCELLED": RefundStatus.FAILED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def run_with_conflict_retry(fn: Callable[[], Awaitable[T]], attempts: int) -> T:
    """Re-run a whole read-apply-write unit while the row version keeps moving underneath it."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        retry=retry_if_exception_type(ConcurrentUpdateError),
        wait=wait_random(0, 0.05),
        reraise=True,
    ):
        with attempt:
            result = await fn()
    return result


def publish_events(events: list[PaymentEvent]) -> None:
    for event in events:
        logger.info(event.name, **event.to_log())


async def ensure_order(uow: AbstractUnitOfWork, payment: Payment, *, now: datetime) -> Order:
    """Return the payment's order, creating it on first call (one order per payment)."""
    existing = await uow.order_repository.get_by_payment_id(payment.id)
    if existing is not None:
        return existing
    items = payment.gateway_data.items if isinstance(payment.gateway_data, PayPalData) else []
    return await uow.order_repository.create(Order.from_payment(payment, items=items, now=now))


async def finalize_capture(
    uow: AbstractUnitOfWork,
    payment: Payment,
    *,
    capture_id: Optional[str],
    now: datetime,
    reason: str,
    performed_by: PerformedBy,
    payer: Optional[dict[str, Any]] = None,
    capture_status: Optional[str] = None,
) -> tuple[Payment, Order, bool]:
    """
    Complete a payment and materialise its order inside the caller's unit of work.

    Idempotent: a payment that is already settled keeps its transaction id and
    status, and the existing order is returned. Returns (payment, order, completed_now).
    """
    completed_now = payment.mark_completed(capture_id, reason=reason, performed_by=performed_by, now=now)
    changed = completed_now
    data = payment.gateway_data
    if isinstance(data, PayPalData):
        if capture_id and not data.capture_id:
            data.capture_id = capture_id
            changed = True
        if capture_status and data.capture_status != capture_status:
            data.capture_status = capture_status
            changed = True
        if payer and data.payer is None:
            data.payer = PayPalPayer(**payer)
            changed = True

    order = await ensure_order(uow, payment, now=now)
    if payment.order_id != order.id:
        payment.link_order(order.id, now=now)
        changed = True
    if changed:
        payment = await uow.payment_repository.update(payment)
    return payment, order, completed_now


def _random_reference(prefix: str) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return f"{prefix}-{int(time.time() * 1000)}-{''.join(secrets.choice(alphabet) for _ in range(9))}"


class PaymentApplicationService:
    """支付应用服务 - 创建、捕获、退款与查询"""

    def __init__(
        self,
        uow_factory: UowFactory,
        *,
        paypal: Optional[PayPalGateway] = None,
        card_authorizer: Optional[CardAuthorizer] = None,
        settings: PaymentSettings = payment_settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._paypal = paypal
        self._card_authorizer = card_authorizer
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _to_dto(self, payment: Payment) -> PaymentDTO:
        return PaymentDTO.from_entity(payment, now=self._clock(), refund_window_days=self._settings.refund_window_days)

    def _require_paypal(self) -> PayPalGateway:
        if self._paypal is None:
            raise UpstreamError("PayPal is not configured", provider="paypal")
        return self._paypal

    async def _get_active_user(self, user_id: int) -> User:
        async with self._uow_factory(readonly=True) as uow:
            user = await uow.user_repository.get_by_id(user_id)
        if user is None:
            raise UserNotFoundException(user_id)
        user.ensure_active()
        return user

    def _price(self, req: PriceBreakdown) -> tuple[Decimal, Decimal]:
        """Validate the money fields and return (amount, tax) in the request currency."""
        for name in ("shipping_amount", "discount_amount"):
            if getattr(req, name) < 0:
                raise PaymentValidationError(f"{name} must not be negative", field=name)
        if req.subtotal is not None:
            if req.subtotal <= 0:
                raise PaymentValidationError(f"Subtotal must be greater than 0: {req.subtotal}", field="subtotal")
            amount, tax = compute_amount(
                req.subtotal,
                shipping=req.shipping_amount,
                discount=req.discount_amount,
                vat_rate=self._settings.vat_rate,
            )
        else:
            amount, tax = round2(req.amount), round2(0)
        if amount <= 0:
            raise PaymentValidationError(f"Amount must be greater than 0: {amount}", field="amount")
        return amount, tax

    # ------------------------------------------------------------------
    # PayPal: create
    # ------------------------------------------------------------------
    async def create_paypal_order(self, user_id: int, req: CreatePayPalOrder) -> PayPalOrderCreated:
        original_amount, _ = self._price(req)
        items_base = round2(req.subtotal if req.subtotal is not None else original_amount)
        if req.items:
            items_total = round2(sum((i.price * i.quantity for i in req.items), Decimal("0")))
            if items_total != items_base:
                raise PaymentValidationError(
                    "Items total does not match order amount",
                    field="items",
                    details={"items_total": str(items_total), "expected": str(items_base)},
                )

        settlement = Currency(self._settings.paypal.settlement_currency)
        rate = exchange_rate(req.currency, settlement)
        gateway = self._require_paypal()
        await self._get_active_user(user_id)

        items = [
            PayPalItemRequest(name=i.name[:127], quantity=i.quantity, unit_amount=round2(i.price * rate))
            for i in req.items
        ]
        if items:
            item_total = round2(sum((i.unit_amount * i.quantity for i in items), Decimal("0")))
        else:
            item_total = round2(items_base * rate)

        if req.subtotal is not None:
            shipping = round2(req.shipping_amount * rate)
            discount = round2(req.discount_amount * rate)
            amount, tax = compute_amount(
                item_total, shipping=shipping, discount=discount, vat_rate=self._settings.vat_rate
            )
        else:
            shipping = discount = tax = round2(0)
            amount = item_total

        order = PayPalOrderRequest(
            reference_id=_random_reference("TEMP"),
            currency=settlement.value,
            amount=amount,
            item_total=item_total,
            tax_total=tax,
            shipping=shipping,
            discount=discount,
            items=items,
            description=f"Order from {self._settings.paypal.brand_name}",
            brand_name=self._settings.paypal.brand_name,
            return_url=req.return_url or self._settings.paypal.return_url,
            cancel_url=req.cancel_url or self._settings.paypal.cancel_url,
            locale=paypal_locale(req.market),
        )
        logger.info(
            "paypal_order_create_request",
            user_id=user_id,
            reference_id=order.reference_id,
            amount=str(amount),
            currency=settlement.value,
            original_amount=str(original_amount),
            original_currency=req.currency.value,
        )
        created = await gateway.create_order(order)
        approval_url = created.approval_url()
        if not approval_url:
            raise UpstreamProtocolError(
                "PayPal order response has no approval link",
                provider=gateway.provider,
                details={"gateway_order_id": created.id},
            )

        now = self._clock()
        payment = Payment.open(
            user_id=user_id,
            payment_method=PaymentMethod.PAYPAL,
            gateway=Gateway.PAYPAL,
            amount=amount,
            currency=settlement,
            market=req.market,
            reason="PayPal order created",
            now=now,
            gateway_order_id=created.id,
            subtotal=item_total if req.subtotal is not None else None,
            tax_amount=tax,
            shipping_amount=shipping,
            discount_amount=discount,
            billing_address=dict(req.billing_address or {"country": req.market.value, "currency": req.currency.value}),
            gateway_data=PayPalData(
                order_id=created.id,
                create_time=created.create_time,
                links=[PayPalLink(href=l.href, rel=l.rel, method=l.method) for l in created.links],
                original_currency=req.currency.value,
                original_amount=original_amount,
                exchange_rate=rate,
                items=[i.model_dump(mode="json") for i in req.items],
            ),
        )
        refresh_derived_fields(payment, vat_rate=self._settings.vat_rate)
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.create(payment)

        publish_events([
            PaymentCreated(
                payment_id=payment.id,
                gateway=payment.gateway.value,
                gateway_order_id=payment.gateway_order_id,
                amount=str(payment.amount),
                currency=payment.currency.value,
                status=payment.status.value,
            )
        ])
        return PayPalOrderCreated(
            payment_id=payment.id,
            gateway_order_id=created.id,
            approval_url=approval_url,
            amount=SettlementAmount(
                original=original_amount,
                original_currency=req.currency.value,
                settlement=payment.amount,
                settlement_currency=settlement.value,
                exchange_rate=rate,
            ),
        )

    # ------------------------------------------------------------------
    # PayPal: capture
    # ------------------------------------------------------------------
    async def capture_paypal_order(self, user_id: int, gateway_order_id: str) -> PaymentWithOrder:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_gateway_order(gateway_order_id, user_id=user_id)
        if payment is None:
            raise PaymentNotFoundError(gateway_order_id)

        if payment.is_settled():
            logger.info("paypal_capture_already_settled", payment_id=payment.id, status=payment.status.value)
            return await self._apply_capture(payment.id, None)

        # 过期取消的订单仍可能已被买家批准，交给 PayPal 判断能否捕获
        if payment.status == PaymentStatus.FAILED:
            raise AlreadyProcessedError(gateway_order_id, status=payment.status.value, payment_id=payment.id)

        gateway = self._require_paypal()
        try:
            capture = await gateway.capture_order(gateway_order_id, request_id=f"capture-{gateway_order_id}")
        except UpstreamError as exc:
            if exc.status_code == 422 and exc.issue in PAYPAL_ALREADY_PROCESSED_ISSUES:
                logger.info("paypal_capture_already_processed", payment_id=payment.id, issue=exc.issue)
                current = await gateway.get_order(gateway_order_id)
                if not current.is_captured:
                    raise AlreadyProcessedError(
                        gateway_order_id, status=payment.status.value, payment_id=payment.id
                    ) from exc
                capture = current
            else:
                # 支付保持原状态（pending），调用方可安全重试
                logger.warning(
                    "paypal_capture_failed",
                    payment_id=payment.id,
                    status_code=exc.status_code,
                    issue=exc.issue,
                    retryable=exc.retryable,
                )
                raise

        return await self._apply_capture(payment.id, capture)

    async def _apply_capture(self, payment_id: int, capture: Optional[CaptureResult]) -> PaymentWithOrder:
        events: list[PaymentEvent] = []

        async def _unit() -> PaymentWithOrder:
            events.clear()
            now = self._clock()
            async with self._uow_factory() as uow:
                payment = await uow.payment_repository.get_by_id(payment_id)
                if payment is None:
                    raise PaymentNotFoundError(str(payment_id))

                target = PaymentStatus.COMPLETED
                if capture is not None and not payment.is_settled():
                    target = PaymentStatus(PAYPAL_STATUS_TO_INTERNAL.get(
                        capture.capture_status or capture.status, PaymentStatus.CAPTURING.value
                    ))

                if target == PaymentStatus.COMPLETED:
                    payment, order, completed_now = await finalize_capture(
                        uow,
                        payment,
                        capture_id=capture.capture_id if capture else None,
                        payer=capture.payer.model_dump() if capture else None,
                        capture_status=capture.capture_status if capture else None,
                        now=now,
                        reason="PayPal payment captured",
                        performed_by=PerformedBy.USER,
                    )
                    if completed_now:
                        events.append(PaymentCompleted(
                            payment_id=payment.id,
                            gateway=payment.gateway.value,
                            gateway_order_id=payment.gateway_order_id,
                            transaction_id=payment.gateway_transaction_id,
                            order_id=order.id,
                        ))
                    return PaymentWithOrder(payment=self._to_dto(payment), order=OrderDTO.from_entity(order))

                if payment.status == PaymentStatus.CANCELLED:
                    # 只有资金到账才恢复已取消的支付；记下 capture 供后续 webhook 匹配
                    if isinstance(payment.gateway_data, PayPalData):
                        payment.gateway_data.capture_id = capture.capture_id
                        payment.gateway_data.capture_status = capture.capture_status
                    payment = await uow.payment_repository.update(payment)
                    return PaymentWithOrder(payment=self._to_dto(payment), order=None)

                if target == PaymentStatus.FAILED:
                    payment.mark_failed(
                        reason="Capture declined by PayPal",
                        code=capture.capture_status,
                        gateway_message=capture.status,
                        now=now,
                    )
                    events.append(PaymentFailed(
                        payment_id=payment.id,
                        gateway=payment.gateway.value,
                        gateway_order_id=payment.gateway_order_id,
                        reason="Capture declined by PayPal",
                    ))
                else:
                    payment.transition_to(target, reason="Capture pending at PayPal", performed_by=PerformedBy.GATEWAY, now=now)
                    if isinstance(payment.gateway_data, PayPalData):
                        payment.gateway_data.capture_id = capture.capture_id
                        payment.gateway_data.capture_status = capture.capture_status
                payment = await uow.payment_repository.update(payment)
                return PaymentWithOrder(payment=self._to_dto(payment), order=None)

        result = await run_with_conflict_retry(_unit, self._settings.conflict_retries)
        publish_events(events)
        return result

    # ------------------------------------------------------------------
    # Simulated card
    # ------------------------------------------------------------------
    async def create_card_payment(self, user_id: int, req: CreateCardPayment) -> PaymentWithOrder:
        amount, tax = self._price(req)
        if self._card_authorizer is None:
            raise UpstreamError("Card payments are not configured", provider=Gateway.CARD_SIMULATED.value)
        await self._get_active_user(user_id)

        authorization = await self._card_authorizer.authorize(
            CardAuthorizationRequest(
                amount=amount,
                currency=req.currency.value,
                card_number=req.card.number,
                expiry_month=req.card.expiry_month,
                expiry_year=req.card.expiry_year,
                cvv=req.card.cvv,
            )
        )
        last_four = req.card.number[-4:]
        if not authorization.approved:
            logger.info(
                "card_payment_declined",
                user_id=user_id,
                last_four=last_four,
                failure_code=authorization.failure_code,
            )
            raise CardDeclinedError(authorization.failure_code or "CARD_DECLINED")

        now = self._clock()
        payment = Payment.open(
            user_id=user_id,
            payment_method=PaymentMethod.CARD,
            gateway=Gateway.CARD_SIMULATED,
            amount=amount,
            currency=req.currency,
            market=req.market,
            status=PaymentStatus.COMPLETED,
            reason="Card payment authorized",
            performed_by=PerformedBy.GATEWAY,
            now=now,
            gateway_transaction_id=generate_transaction_id("SIM"),
            subtotal=round2(req.subtotal) if req.subtotal is not None else None,
            tax_amount=tax,
            shipping_amount=round2(req.shipping_amount) if req.subtotal is not None else round2(0),
            discount_amount=round2(req.discount_amount) if req.subtotal is not None else round2(0),
            billing_address=dict(req.billing_address),
            gateway_data=CardData(
                last_four=last_four,
                brand=detect_card_brand(req.card.number),
                expiry_month=req.card.expiry_month,
                expiry_year=req.card.expiry_year,
                country=req.billing_address.get("country") or req.market.value,
                authorization_code=authorization.authorization_code,
            ),
        )
        refresh_derived_fields(payment, vat_rate=self._settings.vat_rate)

        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.create(payment)
            order = await uow.order_repository.create(
                Order.from_payment(payment, items=[i.model_dump(mode="json") for i in req.items], now=now)
            )
            payment.link_order(order.id, now=now)
            payment = await uow.payment_repository.update(payment)

        publish_events([
            PaymentCompleted(
                payment_id=payment.id,
                gateway=payment.gateway.value,
                transaction_id=payment.gateway_transaction_id,
                order_id=order.id,
            )
        ])
        return PaymentWithOrder(payment=self._to_dto(payment), order=OrderDTO.from_entity(order))

    # ------------------------------------------------------------------
    # Refund (admin)
    # ------------------------------------------------------------------
    async def refund_payment(self, actor: User, payment_id: int, req: RefundCreate) -> PaymentDTO:
        if not actor.is_superuser:
            raise ForbiddenException("Only administrators can issue refunds")

        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))

        # 先做本地校验，失败时不调用网关
        amount = payment.check_refund(
            req.amount, now=self._clock(), window_days=self._settings.refund_window_days
        )

        gateway_refund_id: Optional[str] = None
        refund_status = RefundStatus.PENDING
        if payment.gateway == Gateway.PAYPAL:
            if not payment.gateway_transaction_id:
                raise PaymentValidationError("Payment has no capture to refund", field="payment_id")
            result = await self._require_paypal().refund_capture(
                payment.gateway_transaction_id,
                amount,
                payment.currency.value,
                request_id=f"refund-{payment.id}-{len(payment.refunds) + 1}",
                note=req.reason,
            )
            gateway_refund_id = result.refund_id
            refund_status = PAYPAL_REFUND_STATUS.get(result.status, RefundStatus.PENDING)
            if refund_status == RefundStatus.FAILED:
                raise UpstreamError(
                    f"PayPal refund {result.status.lower()}",
                    provider="paypal",
                    details={"refund_id": result.refund_id},
                )

        events: list[PaymentEvent] = []

        async def _unit() -> Payment:
            events.clear()
            async with self._uow_factory() as uow:
                current = await uow.payment_repository.get_by_id(payment_id)
                if current is None:
                    raise PaymentNotFoundError(str(payment_id))
                record = current.apply_refund(
                    amount,
                    reason=req.reason,
                    notes=req.notes,
                    gateway_refund_id=gateway_refund_id,
                    refund_status=refund_status,
                    processed_by=actor.id,
                    performed_by=PerformedBy.ADMIN,
                    now=self._clock(),
                    window_days=self._settings.refund_window_days,
                    # 网关已经退款成功，本地只负责记账
                    enforce_window=gateway_refund_id is None,
                )
                updated = await uow.payment_repository.update(current)
                if record is not None:
                    events.append(PaymentRefunded(
                        payment_id=updated.id,
                        gateway=updated.gateway.value,
                        gateway_order_id=updated.gateway_order_id,
                        amount=str(record.amount),
                        total_refunded=str(updated.total_refunded),
                        gateway_refund_id=gateway_refund_id,
                    ))
                return updated

        updated = await run_with_conflict_retry(_unit, self._settings.conflict_retries)
        logger.info(
            "refund_initiated",
            payment_id=payment_id,
            amount=str(amount),
            status=updated.status.value,
            admin_id=actor.id,
        )
        publish_events(events)
        return self._to_dto(updated)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_payment(self, actor: User, payment_id: int) -> PaymentDTO:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        if not actor.can_view(payment.user_id):
            raise ForbiddenException("Not authorized to view this payment")
        return self._to_dto(payment)

    async def list_payments(self, user_id: int, query: PaymentListQuery) -> tuple[list[PaymentDTO], int]:
        async with self._uow_factory(readonly=True) as uow:
            repo = uow.payment_repository
            filters = dict(status=query.status, payment_method=query.payment_method, market=query.market)
            items = await repo.list_by_user(user_id, skip=query.skip, limit=query.limit, **filters)
            total = await repo.count_by_user(user_id, **filters)
        return [self._to_dto(p) for p in items], total

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def expire_stale_pending(self, batch_size: int = 100) -> int:
        """Cancel pending payments whose approval window has passed; returns how many were cancelled."""
        cutoff = self._clock() - timedelta(minutes=self._settings.pending_expiry_minutes)
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.payment_repository.list_stale_pending(cutoff, limit=batch_size)

        cancelled = 0
        for candidate in stale:
            async def _unit(payment_id: int = candidate.id) -> bool:
                async with self._uow_factory() as uow:
                    payment = await uow.payment_repository.get_by_id(payment_id)
                    if payment is None or payment.status != PaymentStatus.PENDING:
                        return False
                    payment.mark_cancelled(
                        reason="Approval window expired", performed_by=PerformedBy.SYSTEM, now=self._clock()
                    )
                    await uow.payment_repository.update(payment)
                    return True

            if await run_with_conflict_retry(_unit, self._settings.conflict_retries):
                cancelled += 1
                publish_events([
                    PaymentCancelled(
                        payment_id=candidate.id,
                        gateway=candidate.gateway.value,
                        gateway_order_id=candidate.gateway_order_id,
                        reason="Approval window expired",
                    )
                ])
        logger.info("stale_pending_expired", cancelled=cancelled, scanned=len(stale), cutoff=cutoff.isoformat())
        return cancelled
