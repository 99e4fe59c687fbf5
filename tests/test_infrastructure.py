from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from application.dtos.payments import CreatePayPalOrder
from core.config import settings
from infrastructure.database import build_engine, create_tables
from infrastructure.external.cache.redis_client import RedisClient
from infrastructure.tasks.config.beat import CELERY_BEAT_SCHEDULE
from infrastructure.tasks.tasks import payments as payment_tasks


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.fail = fail

    async def set(self, key, value, ex=None, nx=False):
        if self.fail:
            raise RedisConnectionError("connection refused")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def ping(self):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return True


@pytest.mark.asyncio
async def test_remember_once_uses_namespace_and_nx():
    fake = FakeRedis()
    cache = RedisClient(fake, namespace="payments:")

    assert await cache.remember_once("webhook:paypal:WH-1:abc", ttl=60) is True
    assert await cache.remember_once("webhook:paypal:WH-1:abc", ttl=60) is False
    assert list(fake.store) == ["payments:webhook:paypal:WH-1:abc"]

    assert await cache.delete("webhook:paypal:WH-1:abc") == 1
    assert await cache.remember_once("webhook:paypal:WH-1:abc", ttl=60) is True


@pytest.mark.asyncio
async def test_remember_once_fails_open_when_redis_is_down():
    cache = RedisClient(FakeRedis(fail=True))
    assert await cache.remember_once("k", ttl=60) is True
    assert await cache.health_check() is False


def test_beat_schedules_expiry_sweep():
    entry = CELERY_BEAT_SCHEDULE["payments-expire-stale-pending"]
    assert entry["task"] == "payments.expire_stale_pending"
    assert entry["schedule"] >= 60


@pytest.mark.asyncio
async def test_expiry_task_uses_configured_database(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'task.db'}"
    engine = build_engine(url)
    await create_tables(bind=engine)
    await engine.dispose()
    monkeypatch.setattr(settings.database, "url", url)

    # nothing stale in an empty database
    assert await payment_tasks.expire_stale_pending(batch_size=10) == 0


@pytest.mark.asyncio
async def test_expiry_sweep_cancels_only_stale(service, clock, users):
    stale_order = await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("5.00")))
    clock.advance(minutes=120)
    await service.create_paypal_order(users["buyer"].id, CreatePayPalOrder(amount=Decimal("6.00")))
    clock.advance(minutes=61)

    assert await service.expire_stale_pending(batch_size=10) == 1
    payment = await service.get_payment(users["buyer"], stale_order.payment_id)
    assert payment.status == "cancelled"
    assert payment.status_history[-1].reason == "Approval window expired"
