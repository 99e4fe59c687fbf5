"""
Translate gateway HTTP failures into the domain's UpstreamError family.

Adapters call ``raise_for_gateway_status`` on every response; the retry loop in
``BaseGatewayClient`` only ever sees ``TransientGatewayStatus`` and httpx
transport errors.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from domain.payment.exceptions import UpstreamError, UpstreamTimeoutError


TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})


class TransientGatewayStatus(Exception):
    """Internal marker so tenacity can retry 429/5xx responses; never leaves the adapter."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"transient status {response.status_code}")
        self.response = response


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def parse_issue(body: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Return (issue, description) from a PayPal error body.

    PayPal puts the machine-readable code in ``details[0].issue`` and falls back to
    ``name`` (e.g. ``UNPROCESSABLE_ENTITY``) or the OAuth ``error`` field.
    """
    details = body.get("details") or []
    if details and isinstance(details[0], dict):
        first = details[0]
        return first.get("issue"), first.get("description") or body.get("message")
    return body.get("name") or body.get("error"), body.get("message") or body.get("error_description")


def upstream_error_from_response(provider: str, response: httpx.Response) -> UpstreamError:
    body = _error_body(response)
    issue, description = parse_issue(body)
    message = description or f"{provider} returned HTTP {response.status_code}"
    return UpstreamError(
        message,
        provider=provider,
        status_code=response.status_code,
        issue=issue,
        retryable=response.status_code in TRANSIENT_STATUS_CODES,
        details={"debug_id": body.get("debug_id")} if body.get("debug_id") else None,
    )


def raise_for_gateway_status(provider: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    raise upstream_error_from_response(provider, response)


def upstream_error_from_transport(provider: str, exc: Exception) -> UpstreamError:
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTimeoutError(f"{provider} did not respond in time", provider=provider)
    if isinstance(exc, TransientGatewayStatus):
        return upstream_error_from_response(provider, exc.response)
    return UpstreamError(f"{provider} is unreachable: {exc}", provider=provider, retryable=True)
