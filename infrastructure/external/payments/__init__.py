"""
Factories for payment gateway adapters.

PayPal adapters are process-wide singletons so the OAuth token and the HTTP
connection pool are shared; they are None while PayPal credentials are absent.
"""
from __future__ import annotations

from typing import Optional

from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.external.payments.card_authorizer import SimulatedCardAuthorizer
from infrastructure.external.payments.paypal_client import PayPalClient
from infrastructure.external.payments.webhook_verifier import PayPalWebhookVerifier


logger = get_logger(__name__)

_paypal_client: Optional[PayPalClient] = None


def get_paypal_client() -> Optional[PayPalClient]:
    global _paypal_client
    if _paypal_client is None:
        if not payment_settings.paypal.client_id or not payment_settings.paypal.client_secret:
            return None
        _paypal_client = PayPalClient(payment_settings)
        logger.info("paypal_client_initialized", environment=payment_settings.paypal.environment)
    return _paypal_client


def get_webhook_verifier() -> Optional[PayPalWebhookVerifier]:
    client = get_paypal_client()
    return PayPalWebhookVerifier(client) if client is not None else None


def get_card_authorizer() -> SimulatedCardAuthorizer:
    return SimulatedCardAuthorizer(settings=payment_settings)


async def shutdown_payment_clients() -> None:
    global _paypal_client
    if _paypal_client is not None:
        await _paypal_client.aclose()
        _paypal_client = None


__all__ = [
    "PayPalClient",
    "PayPalWebhookVerifier",
    "SimulatedCardAuthorizer",
    "get_paypal_client",
    "get_webhook_verifier",
    "get_card_authorizer",
    "shutdown_payment_clients",
]
