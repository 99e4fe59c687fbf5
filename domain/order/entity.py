"""
订单领域实体 - 支付成功后生成的订单快照
"""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.payment.entity import Payment, round2


class OrderStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


def generate_order_number() -> str:
    """形如 ORD-1700000000000-K3J9QZ"""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


@dataclass
class Order:
    """
    订单实体

    金额、币种与市场是创建时从支付复制的快照，之后支付的退款等变化不影响订单展示。
    每笔支付最多对应一个订单（payment_id 唯一）。
    """

    id: Optional[int]
    order_number: str
    user_id: int
    payment_id: int
    amount: Decimal
    currency: str
    market: str
    payment_method: str
    status: OrderStatus = OrderStatus.CONFIRMED
    subtotal: Optional[Decimal] = None
    tax_amount: Decimal = Decimal("0.00")
    shipping_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    items: list[dict[str, Any]] = field(default_factory=list)
    billing_address: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_payment(
        cls,
        payment: Payment,
        *,
        items: Optional[list[dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> "Order":
        if payment.id is None:
            raise ValueError("Order requires a persisted payment")
        return cls(
            id=None,
            order_number=generate_order_number(),
            user_id=payment.user_id,
            payment_id=payment.id,
            amount=round2(payment.amount),
            currency=payment.currency.value,
            market=payment.market.value,
            payment_method=payment.payment_method.value,
            subtotal=payment.subtotal,
            tax_amount=payment.tax_amount,
            shipping_amount=payment.shipping_amount,
            discount_amount=payment.discount_amount,
            items=list(items or []),
            billing_address=dict(payment.billing_address),
            created_at=now or datetime.now(timezone.utc),
        )
