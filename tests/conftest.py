"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault(
    "DATABASE__URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.mkdtemp(prefix='payments-tests-'), 'app.db')}",
)

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.dtos.payments import (
    CaptureResult,
    CardAuthorization,
    CardAuthorizationRequest,
    CreatedGatewayOrder,
    GatewayLink,
    GatewayRefundResult,
    PayerInfo,
    PayPalOrderRequest,
)
from application.services.payment_service import PaymentApplicationService
from application.services.webhook_service import PayPalWebhookService
from core.settings import PaymentSettings
from domain.user.entity import User
from infrastructure.database import build_engine, create_tables
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


class FixedClock:
    """Deterministic clock; tests move time forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubPayPalGateway:
    """In-memory PayPal double recording every call."""

    provider = "paypal"

    def __init__(self):
        self.created: list[PayPalOrderRequest] = []
        self.captures: list[tuple[str, Optional[str]]] = []
        self.refunds: list[dict[str, Any]] = []
        self.capture_error: Optional[Exception] = None
        self.capture_status = "COMPLETED"
        self.order_state: dict[str, CaptureResult] = {}
        self.include_approve_link = True
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq:04d}"

    async def create_order(self, order: PayPalOrderRequest) -> CreatedGatewayOrder:
        self.created.append(order)
        order_id = self._next("5O190127TN36")
        links = [GatewayLink(href=f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{order_id}", rel="self")]
        if self.include_approve_link:
            links.append(GatewayLink(href=f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}", rel="approve"))
        return CreatedGatewayOrder(id=order_id, status="CREATED", create_time="2026-10-01T12:00:00Z", links=links)

    async def capture_order(self, order_id: str, *, request_id: Optional[str] = None) -> CaptureResult:
        self.captures.append((order_id, request_id))
        if self.capture_error is not None:
            raise self.capture_error
        result = CaptureResult(
            order_id=order_id,
            status="COMPLETED" if self.capture_status == "COMPLETED" else "APPROVED",
            capture_id=f"CAP-{order_id}",
            capture_status=self.capture_status,
            payer=PayerInfo(payer_id="PAYER123", email="buyer@example.com", name="Pat Buyer"),
        )
        self.order_state[order_id] = result
        return result

    async def get_order(self, order_id: str) -> CaptureResult:
        return self.order_state.get(order_id) or CaptureResult(order_id=order_id, status="APPROVED")

    async def refund_capture(self, capture_id, amount, currency, *, request_id=None, note=None) -> GatewayRefundResult:
        self.refunds.append({"capture_id": capture_id, "amount": amount, "currency": currency, "request_id": request_id})
        return GatewayRefundResult(refund_id=self._next("REF-"), status="COMPLETED", amount=amount, currency=currency)


class StubCardAuthorizer:
    def __init__(self, approved: bool = True):
        self.approved = approved
        self.requests: list[CardAuthorizationRequest] = []

    async def authorize(self, req: CardAuthorizationRequest) -> CardAuthorization:
        self.requests.append(req)
        if self.approved:
            return CardAuthorization(approved=True, authorization_code="A1B2C3")
        return CardAuthorization(approved=False, failure_code="CARD_DECLINED", message="Payment declined by issuer")


class StubVerifier:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls = 0

    async def verify(self, headers, event) -> bool:
        self.calls += 1
        return self.result


class MemoryDeliveryCache:
    def __init__(self):
        self.keys: dict[str, int] = {}

    async def remember_once(self, key: str, ttl: int) -> bool:
        if key in self.keys:
            return False
        self.keys[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.keys.pop(k, None) is not None)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def payment_config() -> PaymentSettings:
    return PaymentSettings(vat_rate=Decimal("0.20"), refund_window_days=90, pending_expiry_minutes=180)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine):
    sessions = async_sessionmaker(bind=engine, expire_on_commit=False)

    def factory(readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(sessions, readonly=readonly)

    return factory


@pytest_asyncio.fixture
async def users(uow_factory) -> dict[str, User]:
    seeded = {}
    async with uow_factory() as uow:
        for key, superuser, active in (
            ("buyer", False, True),
            ("other", False, True),
            ("admin", True, True),
            ("inactive", False, False),
        ):
            seeded[key] = await uow.user_repository.create(
                User(id=None, username=key, email=f"{key}@example.com", is_superuser=superuser, is_active=active)
            )
    return seeded


@pytest.fixture
def paypal() -> StubPayPalGateway:
    return StubPayPalGateway()


@pytest.fixture
def card_authorizer() -> StubCardAuthorizer:
    return StubCardAuthorizer()


@pytest.fixture
def service(uow_factory, paypal, card_authorizer, payment_config, clock) -> PaymentApplicationService:
    return PaymentApplicationService(
        uow_factory,
        paypal=paypal,
        card_authorizer=card_authorizer,
        settings=payment_config,
        clock=clock,
    )


@pytest.fixture
def verifier() -> StubVerifier:
    return StubVerifier()


@pytest.fixture
def delivery_cache() -> MemoryDeliveryCache:
    return MemoryDeliveryCache()


@pytest.fixture
def webhooks(uow_factory, verifier, delivery_cache, payment_config, clock) -> PayPalWebhookService:
    return PayPalWebhookService(
        uow_factory,
        verifier=verifier,
        cache=delivery_cache,
        settings=payment_config,
        clock=clock,
    )
