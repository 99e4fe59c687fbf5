"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings; every key is read with the ``PAYMENT__``
prefix, e.g. ``PAYMENT__PAYPAL__CLIENT_ID`` or ``PAYMENT__WEBHOOK__VERIFY_SIGNATURES``.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 3.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    verify_signatures: bool = True
    dedupe_ttl_seconds: int = 3 * 24 * 3600
    ip_allowlist: list[str] | None = None  # Optional IPs allowed to post webhooks


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    environment: Literal["sandbox", "live"] = "sandbox"
    webhook_id: Optional[str] = None
    brand_name: str = "UniDigital Marketplace"
    return_url: str = "http://localhost:3000/checkout/success"
    cancel_url: str = "http://localhost:3000/checkout/cancel"
    settlement_currency: str = "USD"

    @property
    def base_url(self) -> str:
        if self.environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class CardSettings(BaseModel):
    success_rate: float = Field(default=0.95, ge=0.0, le=1.0)


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    paypal: PayPalSettings = Field(default_factory=PayPalSettings)
    card: CardSettings = Field(default_factory=CardSettings)

    refund_window_days: int = 90
    vat_rate: Decimal = Decimal("0.20")
    pending_expiry_minutes: int = 180
    conflict_retries: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
