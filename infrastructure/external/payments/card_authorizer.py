"""
Simulated card authorizer.

There is no card network behind this adapter: an authorization is a Bernoulli
trial with ``success_rate``. Expired cards are always declined. Tests inject a
seeded ``random.Random`` (or a success rate of 0/1) for determinism.
"""
from __future__ import annotations

import random
import secrets
from datetime import datetime, timezone
from typing import Optional

from application.dtos.payments import CardAuthorization, CardAuthorizationRequest
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings


logger = get_logger(__name__)


class SimulatedCardAuthorizer:
    provider = "card_simulated"

    def __init__(
        self,
        success_rate: Optional[float] = None,
        *,
        rng: Optional[random.Random] = None,
        settings: PaymentSettings = payment_settings,
    ) -> None:
        self._success_rate = settings.card.success_rate if success_rate is None else success_rate
        self._rng = rng or random.Random()

    @staticmethod
    def _is_expired(req: CardAuthorizationRequest, now: datetime) -> bool:
        return (req.expiry_year, req.expiry_month) < (now.year, now.month)

    async def authorize(self, req: CardAuthorizationRequest) -> CardAuthorization:
        if self._is_expired(req, datetime.now(timezone.utc)):
            return CardAuthorization(approved=False, failure_code="EXPIRED_CARD", message="Card has expired")

        if self._rng.random() >= self._success_rate:
            logger.info("card_authorization_declined", last_four=req.card_number[-4:], amount=str(req.amount))
            return CardAuthorization(
                approved=False,
                failure_code="CARD_DECLINED",
                message="Payment declined by issuer",
            )
        return CardAuthorization(approved=True, authorization_code=secrets.token_hex(3).upper())
