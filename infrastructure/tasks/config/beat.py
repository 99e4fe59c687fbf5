"""Celery beat schedule configuration.

Entries follow the Celery docs layout; schedules are in seconds.
"""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    # 超过审批窗口仍未支付的 PayPal 订单置为 cancelled
    "payments-expire-stale-pending": {
        "task": "payments.expire_stale_pending",
        "schedule": max(60, payment_settings.pending_expiry_minutes * 60 // 6),
        "kwargs": {"batch_size": 100},
    },
}
