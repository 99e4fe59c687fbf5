"""
PayPal webhook reconciliation.

Deliveries are at-least-once and may arrive in any order relative to the capture
call, so every handler converges the payment to the same state no matter how
many times, or when, it runs. Lookup misses and events that no longer apply are
logged and acknowledged; only transient infrastructure failures propagate so the
HTTP layer can ask PayPal to redeliver.
"""
from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from application.dtos.payments import WebhookAck
from application.ports.payment_gateway import DeliveryCache, WebhookVerifier
from application.services.payment_service import (
    PAYPAL_REFUND_STATUS,
    UowFactory,
    finalize_capture,
    publish_events,
    run_with_conflict_retry,
    utcnow,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import BusinessException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    PerformedBy,
    RefundStatus,
)
from domain.payment.events import (
    PaymentCompleted,
    PaymentDisputed,
    PaymentEvent,
    PaymentFailed,
    PaymentRefunded,
)
from domain.payment.exceptions import (
    ConcurrentUpdateError,
    InternalInconsistencyError,
    UpstreamError,
)
from domain.payment.gateway_data import PayPalData


logger = get_logger(__name__)

_CAPTURE_LINK = re.compile(r"/captures/([^/?]+)")

Handler = Callable[[AbstractUnitOfWork, dict[str, Any], list[PaymentEvent]], Awaitable[bool]]


def normalize_event_type(event_type: str) -> str:
    """PAYMENT.CAPTURE.COMPLETED and CAPTURE.COMPLETED are the same event."""
    value = (event_type or "").strip().upper()
    if value.startswith("PAYMENT."):
        value = value[len("PAYMENT."):]
    return value


def is_transient_error(exc: BaseException) -> bool:
    """Failures PayPal should retry: database outages, lost races and unreachable verification."""
    if isinstance(exc, (SQLAlchemyError, ConcurrentUpdateError, OSError)):
        return True
    return isinstance(exc, UpstreamError) and exc.retryable


def _related_order_id(resource: dict[str, Any]) -> Optional[str]:
    return ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")


def _refund_capture_id(resource: dict[str, Any]) -> Optional[str]:
    if resource.get("capture_id"):
        return resource["capture_id"]
    for link in resource.get("links") or []:
        if link.get("rel") == "up":
            match = _CAPTURE_LINK.search(link.get("href") or "")
            if match:
                return match.group(1)
    return None


def _amount(resource: dict[str, Any]) -> tuple[Optional[Decimal], Optional[str]]:
    amount = resource.get("amount") or {}
    try:
        value = Decimal(str(amount["value"])) if amount.get("value") is not None else None
    except InvalidOperation:
        value = None
    return value, amount.get("currency_code")


class PayPalWebhookService:
    """PayPal Webhook 处理：验签 -> 去重 -> 分发"""

    provider = "paypal"

    def __init__(
        self,
        uow_factory: UowFactory,
        *,
        verifier: Optional[WebhookVerifier] = None,
        cache: Optional[DeliveryCache] = None,
        settings: PaymentSettings = payment_settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._verifier = verifier
        self._cache = cache
        self._settings = settings
        self._clock = clock
        self._handlers: dict[str, Handler] = {
            "CAPTURE.COMPLETED": self._on_capture_completed,
            "CAPTURE.DENIED": self._on_capture_denied,
            "CAPTURE.REFUNDED": self._on_capture_refunded,
            "CAPTURE.REVERSED": self._on_capture_reversed,
            "CUSTOMER.DISPUTE.CREATED": self._on_dispute_created,
        }

    async def handle(self, headers: Mapping[str, str], body: bytes) -> WebhookAck:
        try:
            event = json.loads(body or b"{}")
        except ValueError:
            logger.warning("webhook_invalid_json", provider=self.provider, size=len(body or b""))
            return WebhookAck(status="ignored")
        if not isinstance(event, dict):
            logger.warning("webhook_invalid_envelope", provider=self.provider)
            return WebhookAck(status="ignored")

        event_id = event.get("id")
        event_type = normalize_event_type(event.get("event_type", ""))
        log = logger.bind(provider=self.provider, event_id=event_id, event_type=event_type)

        if self._settings.webhook.verify_signatures:
            if self._verifier is None:
                log.error("webhook_verifier_missing")
                return WebhookAck(status="rejected", event_type=event_type, event_id=event_id)
            if not await self._verifier.verify(headers, event):
                log.warning("webhook_signature_rejected")
                return WebhookAck(status="rejected", event_type=event_type, event_id=event_id)

        handler = self._handlers.get(event_type)
        if handler is None:
            log.info("webhook_event_ignored", reason="unhandled_event_type")
            return WebhookAck(status="ignored", event_type=event_type, event_id=event_id)

        dedupe_key = None
        if self._cache is not None and event_id:
            digest = hashlib.sha256(body).hexdigest()[:16]
            dedupe_key = f"webhook:{self.provider}:{event_id}:{digest}"
            if not await self._cache.remember_once(dedupe_key, self._settings.webhook.dedupe_ttl_seconds):
                log.info("webhook_duplicate_delivery")
                return WebhookAck(status="duplicate", event_type=event_type, event_id=event_id)

        resource = event.get("resource") or {}
        try:
            applied = await self._dispatch(handler, resource)
        except Exception:
            # 未完成处理的投递需要允许重放
            if dedupe_key is not None:
                await self._cache.delete(dedupe_key)
            raise

        log.info("webhook_event_processed" if applied else "webhook_event_ignored")
        return WebhookAck(status="processed" if applied else "ignored", event_type=event_type, event_id=event_id)

    async def _dispatch(self, handler: Handler, resource: dict[str, Any]) -> bool:
        events: list[PaymentEvent] = []

        async def _unit() -> bool:
            events.clear()
            async with self._uow_factory() as uow:
                return await handler(uow, resource, events)

        try:
            applied = await run_with_conflict_retry(_unit, self._settings.conflict_retries)
        except (ConcurrentUpdateError, SQLAlchemyError):
            raise
        except BusinessException as exc:
            # 状态机拒绝、金额超限等：本地状态已领先于该事件，记录后确认
            logger.warning(
                "webhook_event_not_applicable",
                provider=self.provider,
                error_type=exc.error_type,
                message=exc.message,
                details=exc.details,
            )
            return False
        publish_events(events)
        return applied

    async def _find_payment(
        self, uow: AbstractUnitOfWork, capture_id: Optional[str], order_id: Optional[str]
    ) -> Optional[Payment]:
        payment = None
        if capture_id:
            payment = await uow.payment_repository.get_by_transaction_id(capture_id)
        if payment is None and order_id:
            payment = await uow.payment_repository.get_by_gateway_order(order_id)
        if payment is None:
            logger.warning(
                "webhook_payment_not_found",
                provider=self.provider,
                capture_id=capture_id,
                gateway_order_id=order_id,
            )
        return payment

    @staticmethod
    def _ensure_same_capture(payment: Payment, capture_id: Optional[str]) -> None:
        known = payment.gateway_transaction_id
        if known is None and isinstance(payment.gateway_data, PayPalData):
            known = payment.gateway_data.capture_id
        if capture_id and known and known != capture_id:
            raise InternalInconsistencyError(
                "Webhook refers to a different capture than the one recorded",
                details={"payment_id": payment.id, "recorded": known, "received": capture_id},
            )

    # ------------------------------------------------------------------
    # handlers: return True when the payment changed
    # ------------------------------------------------------------------
    async def _on_capture_completed(self, uow, resource, events) -> bool:
        capture_id = resource.get("id")
        payment = await self._find_payment(uow, capture_id, _related_order_id(resource))
        if payment is None:
            return False
        self._ensure_same_capture(payment, capture_id)

        payment, order, completed_now = await finalize_capture(
            uow,
            payment,
            capture_id=capture_id,
            capture_status=resource.get("status"),
            now=self._clock(),
            reason="Capture completed (webhook)",
            performed_by=PerformedBy.GATEWAY,
        )
        if completed_now:
            events.append(PaymentCompleted(
                payment_id=payment.id,
                gateway=payment.gateway.value,
                gateway_order_id=payment.gateway_order_id,
                transaction_id=payment.gateway_transaction_id,
                order_id=order.id,
            ))
        return completed_now

    async def _on_capture_denied(self, uow, resource, events) -> bool:
        capture_id = resource.get("id")
        payment = await self._find_payment(uow, capture_id, _related_order_id(resource))
        if payment is None:
            return False
        if not payment.is_capturable():
            # 已完成的支付不会因迟到的 DENIED 事件降级
            logger.info(
                "webhook_denied_ignored",
                payment_id=payment.id,
                status=payment.status.value,
            )
            return False
        self._ensure_same_capture(payment, capture_id)

        reason = (resource.get("status_details") or {}).get("reason") or "Payment denied"
        payment.mark_failed(
            reason=reason,
            code="CAPTURE_DENIED",
            gateway_message=resource.get("status"),
            performed_by=PerformedBy.GATEWAY,
            now=self._clock(),
        )
        await uow.payment_repository.update(payment)
        events.append(PaymentFailed(
            payment_id=payment.id,
            gateway=payment.gateway.value,
            gateway_order_id=payment.gateway_order_id,
            reason=reason,
        ))
        return True

    async def _on_capture_refunded(self, uow, resource, events) -> bool:
        refund_id = resource.get("id")
        capture_id = _refund_capture_id(resource)
        payment = await self._find_payment(uow, capture_id, None)
        if payment is None:
            return False

        amount, currency = _amount(resource)
        if amount is None:
            raise InternalInconsistencyError("Refund event without amount", details={"refund_id": refund_id})
        refund_status = PAYPAL_REFUND_STATUS.get((resource.get("status") or "").upper(), RefundStatus.COMPLETED)
        existing = payment.find_refund(refund_id) if refund_id else None
        if existing is None and refund_status == RefundStatus.FAILED:
            logger.info("webhook_failed_refund_ignored", payment_id=payment.id, refund_id=refund_id)
            return False
        previous_status = existing.status if existing is not None else None

        record = payment.apply_refund(
            amount,
            currency=currency,
            reason=resource.get("note_to_payer") or "Refunded via PayPal",
            gateway_refund_id=refund_id,
            refund_status=refund_status,
            performed_by=PerformedBy.GATEWAY,
            now=self._clock(),
            enforce_window=False,
        )
        if record is None:
            if existing.status == previous_status:
                return False
            await uow.payment_repository.update(payment)
            return True

        await uow.payment_repository.update(payment)
        events.append(PaymentRefunded(
            payment_id=payment.id,
            gateway=payment.gateway.value,
            gateway_order_id=payment.gateway_order_id,
            amount=str(record.amount),
            total_refunded=str(payment.total_refunded),
            gateway_refund_id=refund_id,
        ))
        return True

    async def _on_capture_reversed(self, uow, resource, events) -> bool:
        capture_id = resource.get("id")
        payment = await self._find_payment(uow, capture_id, None)
        if payment is None:
            return False
        if not payment.mark_chargeback(reason="Capture reversed (webhook)", now=self._clock()):
            return False
        await uow.payment_repository.update(payment)
        events.append(PaymentDisputed(
            payment_id=payment.id,
            gateway=payment.gateway.value,
            gateway_order_id=payment.gateway_order_id,
            status=payment.status.value,
        ))
        return True

    async def _on_dispute_created(self, uow, resource, events) -> bool:
        capture_ids = [
            t.get("seller_transaction_id")
            for t in resource.get("disputed_transactions") or []
            if t.get("seller_transaction_id")
        ]
        if not capture_ids:
            logger.warning("webhook_dispute_without_transaction", dispute_id=resource.get("dispute_id"))
            return False

        payment = None
        for capture_id in capture_ids:
            payment = await uow.payment_repository.get_by_transaction_id(capture_id)
            if payment is not None:
                break
        if payment is None:
            logger.warning("webhook_payment_not_found", provider=self.provider, capture_ids=capture_ids)
            return False
        if payment.status in (PaymentStatus.DISPUTED, PaymentStatus.CHARGEBACK):
            return False

        reason = resource.get("reason") or "Dispute opened"
        payment.mark_disputed(reason=f"Dispute opened: {reason}", now=self._clock())
        await uow.payment_repository.update(payment)
        events.append(PaymentDisputed(
            payment_id=payment.id,
            gateway=payment.gateway.value,
            gateway_order_id=payment.gateway_order_id,
            status=payment.status.value,
        ))
        return True
