"""
Payment maintenance tasks.
"""
from __future__ import annotations

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.services.payment_service import PaymentApplicationService
from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.database import build_engine
from infrastructure.tasks.utils.base_task import BaseTask, run_async
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


async def expire_stale_pending(batch_size: int = 100) -> int:
    # 每次调用使用独立引擎：连接池不能跨 asyncio.run 创建的事件循环复用
    engine = build_engine(settings.database.url)
    sessions = async_sessionmaker(bind=engine, expire_on_commit=False)
    try:
        service = PaymentApplicationService(
            lambda readonly=False: SQLAlchemyUnitOfWork(sessions, readonly=readonly),
            settings=payment_settings,
        )
        return await service.expire_stale_pending(batch_size=batch_size)
    finally:
        await engine.dispose()


@shared_task(name="payments.expire_stale_pending", bind=True, base=BaseTask, max_retries=3, default_retry_delay=60)
def task_expire_stale_pending(self, batch_size: int = 100) -> dict:
    try:
        cancelled = run_async(lambda: expire_stale_pending(batch_size))
    except Exception as exc:
        logger.warning("stale_pending_sweep_failed", error=str(exc), retries=self.request.retries)
        raise self.retry(exc=exc)
    return {"cancelled": cancelled}
