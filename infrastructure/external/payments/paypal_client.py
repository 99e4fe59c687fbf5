"""
PayPal Orders v2 adapter over httpx.

Notes on API usage:
- OAuth2 client-credentials token from ``/v1/oauth2/token``, cached until shortly
  before ``expires_in``.
- Every mutating call carries a ``PayPal-Request-Id`` so PayPal deduplicates
  retries; that is what makes retrying create/capture/refund safe.
- Webhook signatures are checked remotely through
  ``/v1/notifications/verify-webhook-signature``.
"""
from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    CaptureResult,
    CreatedGatewayOrder,
    GatewayLink,
    GatewayRefundResult,
    PayerInfo,
    PayPalOrderRequest,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.payment.exceptions import UpstreamError, UpstreamProtocolError
from infrastructure.external.payments.base import BaseGatewayClient
from infrastructure.external.payments.exceptions import raise_for_gateway_status


logger = get_logger(__name__)

# 提前刷新，避免令牌在请求途中过期
TOKEN_EXPIRY_MARGIN_SECONDS = 60

WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _money(currency: str, value: Decimal) -> dict[str, str]:
    return {"currency_code": currency, "value": f"{value:.2f}"}


def build_order_body(order: PayPalOrderRequest) -> dict[str, Any]:
    """Orders v2 create body with a full amount breakdown."""
    breakdown = {"item_total": _money(order.currency, order.item_total)}
    if order.tax_total:
        breakdown["tax_total"] = _money(order.currency, order.tax_total)
    if order.shipping:
        breakdown["shipping"] = _money(order.currency, order.shipping)
    if order.discount:
        breakdown["discount"] = _money(order.currency, order.discount)

    unit: dict[str, Any] = {
        "reference_id": order.reference_id,
        "custom_id": order.reference_id,
        "invoice_id": order.reference_id,
        "description": order.description[:127],
        "amount": {**_money(order.currency, order.amount), "breakdown": breakdown},
    }
    if order.items:
        unit["items"] = [
            {
                "name": item.name[:127],
                "unit_amount": _money(order.currency, item.unit_amount),
                "quantity": str(item.quantity),
                "category": "PHYSICAL_GOODS",
            }
            for item in order.items
        ]

    return {
        "intent": "CAPTURE",
        "purchase_units": [unit],
        "application_context": {
            "brand_name": order.brand_name,
            "landing_page": "LOGIN",
            "shipping_preference": "NO_SHIPPING",
            "user_action": "PAY_NOW",
            "return_url": order.return_url,
            "cancel_url": order.cancel_url,
            "locale": order.locale,
        },
    }


def parse_order(body: dict[str, Any], order_id: Optional[str] = None) -> CaptureResult:
    """Map an order (as returned by capture or GET) onto ``CaptureResult``."""
    capture: dict[str, Any] = {}
    for unit in body.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            capture = captures[0]
            break

    payer = body.get("payer") or {}
    name = payer.get("name") or {}
    full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p) or None
    amount = capture.get("amount") or {}
    return CaptureResult(
        order_id=body.get("id") or order_id or "",
        status=body.get("status") or "",
        capture_id=capture.get("id"),
        capture_status=capture.get("status"),
        amount=Decimal(amount["value"]) if amount.get("value") else None,
        currency=amount.get("currency_code"),
        payer=PayerInfo(payer_id=payer.get("payer_id"), email=payer.get("email_address"), name=full_name),
        raw=body,
    )


class PayPalClient(BaseGatewayClient):
    provider = "paypal"

    def __init__(
        self,
        settings: PaymentSettings = payment_settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=settings.paypal.base_url,
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            transport=transport,
        )
        if not settings.paypal.client_id or not settings.paypal.client_secret:
            raise RuntimeError("PAYMENT__PAYPAL__CLIENT_ID / CLIENT_SECRET not configured")
        self._client_id = settings.paypal.client_id
        self._client_secret = settings.paypal.client_secret
        self._webhook_id = settings.paypal.webhook_id
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # auth
    # ------------------------------------------------------------------
    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            response = await self._send(
                "POST",
                "/v1/oauth2/token",
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            raise_for_gateway_status(self.provider, response)
            body = response.json()
            token = body.get("access_token")
            if not token:
                raise UpstreamProtocolError("PayPal token response has no access_token", provider=self.provider)
            expires_in = int(body.get("expires_in", 3600))
            self._token = token
            self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            self._log("paypal_token_refreshed", expires_in=expires_in)
            return token

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        # POST without a request id is not deduplicated by PayPal
        retry = method == "GET" or request_id is not None
        response = await self._send(method, path, json=json, headers=headers, retry=retry)
        if response.status_code == 401:
            # 令牌被提前吊销：丢弃缓存，下一次调用重新获取
            self._token = None
        raise_for_gateway_status(self.provider, response)
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamProtocolError(
                "PayPal returned a non-JSON body", provider=self.provider, details={"path": path}
            ) from exc
        return body if isinstance(body, dict) else {}

    # ------------------------------------------------------------------
    # PayPalGateway
    # ------------------------------------------------------------------
    async def create_order(self, order: PayPalOrderRequest) -> CreatedGatewayOrder:
        body = await self._call(
            "POST", "/v2/checkout/orders", json=build_order_body(order), request_id=order.reference_id
        )
        if not body.get("id"):
            raise UpstreamProtocolError("PayPal order response has no id", provider=self.provider)
        self._log("paypal_order_created", gateway_order_id=body["id"], status=body.get("status"))
        return CreatedGatewayOrder(
            id=body["id"],
            status=body.get("status") or "CREATED",
            create_time=body.get("create_time"),
            links=[GatewayLink(**link) for link in body.get("links") or [] if link.get("href") and link.get("rel")],
        )

    async def capture_order(self, order_id: str, *, request_id: Optional[str] = None) -> CaptureResult:
        body = await self._call("POST", f"/v2/checkout/orders/{order_id}/capture", json={}, request_id=request_id)
        result = parse_order(body, order_id)
        self._log(
            "paypal_order_captured",
            gateway_order_id=order_id,
            status=result.status,
            capture_id=result.capture_id,
            capture_status=result.capture_status,
        )
        return result

    async def get_order(self, order_id: str) -> CaptureResult:
        return parse_order(await self._call("GET", f"/v2/checkout/orders/{order_id}"), order_id)

    async def refund_capture(
        self,
        capture_id: str,
        amount: Decimal,
        currency: str,
        *,
        request_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> GatewayRefundResult:
        payload: dict[str, Any] = {"amount": _money(currency, amount)}
        if note:
            payload["note_to_payer"] = note[:255]
        body = await self._call(
            "POST", f"/v2/payments/captures/{capture_id}/refund", json=payload, request_id=request_id
        )
        if not body.get("id"):
            raise UpstreamProtocolError("PayPal refund response has no id", provider=self.provider)
        refunded = body.get("amount") or {}
        self._log("paypal_capture_refunded", capture_id=capture_id, refund_id=body["id"], status=body.get("status"))
        return GatewayRefundResult(
            refund_id=body["id"],
            status=body.get("status") or "PENDING",
            amount=Decimal(refunded["value"]) if refunded.get("value") else amount,
            currency=refunded.get("currency_code") or currency,
        )

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------
    async def verify_webhook_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        """
        Ask PayPal whether a delivery is authentic.

        Missing headers or configuration fail closed (False). Transport failures
        raise a retryable ``UpstreamError`` so the delivery is retried later.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        fields = {name: lowered.get(header) for name, header in WEBHOOK_HEADERS.items()}
        missing = [name for name, value in fields.items() if not value]
        if missing:
            logger.warning("paypal_webhook_headers_missing", missing=missing)
            return False
        if not self._webhook_id:
            logger.error("paypal_webhook_id_not_configured")
            return False

        try:
            body = await self._call(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={**fields, "webhook_id": self._webhook_id, "webhook_event": event},
                request_id=f"verify-{fields['transmission_id']}",
            )
        except UpstreamError as exc:
            if exc.retryable or exc.status_code in (None, 401, 403):
                raise
            logger.warning("paypal_webhook_verification_rejected", status_code=exc.status_code, issue=exc.issue)
            return False
        return body.get("verification_status") == "SUCCESS"
