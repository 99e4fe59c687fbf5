"""
WebhookVerifier adapter backed by PayPal's verify-webhook-signature API.
"""
from __future__ import annotations

from typing import Any, Mapping

from infrastructure.external.payments.paypal_client import PayPalClient


class PayPalWebhookVerifier:
    def __init__(self, client: PayPalClient) -> None:
        self._client = client

    async def verify(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        return await self._client.verify_webhook_signature(headers, event)
