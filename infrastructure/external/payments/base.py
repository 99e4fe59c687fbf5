"""
Base gateway client implementing shared concerns: http, retry, logging.

Concrete providers subclass and implement provider-specific request bodies and
response mapping.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from infrastructure.external.payments.exceptions import (
    TRANSIENT_STATUS_CODES,
    TransientGatewayStatus,
    upstream_error_from_transport,
)


logger = get_logger(__name__)


class BaseGatewayClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        base_url: str,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeouts_cfg = timeouts or {"connect": 3.0, "read": 10.0, "write": 10.0, "total": 15.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._timeouts_cfg["total"],
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
        )

    @property
    def client(self) -> httpx.AsyncClient:
        # Keep open for reuse; explicit aclose() will close.
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self.timeouts,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _send(self, method: str, path: str, *, retry: bool = True, **kwargs: Any) -> httpx.Response:
        """
        Send one request, retrying transport errors and 429/5xx responses.

        ``retry`` must stay False for calls that are not idempotent on the
        provider side (no request id). Non-transient error responses are
        returned to the caller for provider-specific mapping.
        """
        attempts = int(self._retry_cfg["max"]) + 1 if retry else 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
                retry=retry_if_exception_type((httpx.TransportError, TransientGatewayStatus)),
                reraise=True,
            ):
                with attempt:
                    response = await self.client.request(method, path, **kwargs)
                    if response.status_code in TRANSIENT_STATUS_CODES:
                        self._log(
                            "gateway_transient_status",
                            method=method,
                            path=path,
                            status_code=response.status_code,
                            attempt=attempt.retry_state.attempt_number,
                        )
                        raise TransientGatewayStatus(response)
        except (httpx.TransportError, TransientGatewayStatus) as exc:
            logger.warning(
                "gateway_request_failed",
                provider=self.provider,
                method=method,
                path=path,
                error=type(exc).__name__,
            )
            raise upstream_error_from_transport(self.provider, exc) from exc
        return response

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
