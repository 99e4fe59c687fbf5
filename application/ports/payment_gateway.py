"""
Payment gateway ports (application/ports) exposing replaceable protocols.

Application depends on these Protocols; infrastructure implements adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CaptureResult,
    CardAuthorization,
    CardAuthorizationRequest,
    CreatedGatewayOrder,
    GatewayRefundResult,
    PayPalOrderRequest,
)


@runtime_checkable
class PayPalGateway(Protocol):
    """Asynchronous approve-then-capture gateway.

    Implementations raise ``UpstreamError`` (with the gateway's status code and
    issue) when the gateway rejects a call, and ``UpstreamTimeoutError`` when it
    cannot be reached in time.
    """

    provider: str

    async def create_order(self, order: PayPalOrderRequest) -> CreatedGatewayOrder: ...

    async def capture_order(self, order_id: str, *, request_id: Optional[str] = None) -> CaptureResult: ...

    async def get_order(self, order_id: str) -> CaptureResult: ...

    async def refund_capture(
        self,
        capture_id: str,
        amount: Decimal,
        currency: str,
        *,
        request_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> GatewayRefundResult: ...


@runtime_checkable
class CardAuthorizer(Protocol):
    """Synchronous card authorization (approve or decline)."""

    async def authorize(self, req: CardAuthorizationRequest) -> CardAuthorization: ...


@runtime_checkable
class WebhookVerifier(Protocol):
    """Checks that a webhook delivery really came from the gateway."""

    async def verify(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool: ...


@runtime_checkable
class DeliveryCache(Protocol):
    """Remembers webhook deliveries for a while (Redis in production)."""

    async def remember_once(self, key: str, ttl: int) -> bool: ...

    async def delete(self, *keys: str) -> int: ...
