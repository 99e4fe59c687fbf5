"""
Payment domain events.

Dataclass events record payment lifecycle facts. The application service collects
them while applying a change and logs them once the unit of work has committed.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional
import uuid


@dataclass
class PaymentEvent:
    payment_id: Optional[int]
    gateway: str
    gateway_order_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return _EVENT_NAMES.get(type(self), type(self).__name__)

    def to_log(self) -> dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


@dataclass
class PaymentCreated(PaymentEvent):
    amount: str = ""
    currency: str = ""
    status: str = ""


@dataclass
class PaymentCompleted(PaymentEvent):
    transaction_id: Optional[str] = None
    order_id: Optional[int] = None


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentRefunded(PaymentEvent):
    amount: str = ""
    total_refunded: str = ""
    gateway_refund_id: Optional[str] = None


@dataclass
class PaymentCancelled(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentDisputed(PaymentEvent):
    status: str = ""


_EVENT_NAMES = {
    PaymentCreated: "payment_created",
    PaymentCompleted: "payment_completed",
    PaymentFailed: "payment_failed",
    PaymentRefunded: "payment_refunded",
    PaymentCancelled: "payment_cancelled",
    PaymentDisputed: "payment_disputed",
}
