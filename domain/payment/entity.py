"""
支付领域实体 - 支付聚合根
"""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from domain.payment.exceptions import (
    ExceedsRefundableAmountError,
    InvalidStatusTransitionError,
    NotRefundableError,
    PaymentValidationError,
)
from domain.payment.gateway_data import GatewayData


TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_REFUND_WINDOW_DAYS = 90


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                         # 已创建，等待用户操作
    PROCESSING = "processing"                   # 已提交网关
    AUTHORIZED = "authorized"                   # 已授权未捕获
    CAPTURING = "capturing"                     # 捕获中
    COMPLETED = "completed"                     # 支付成功
    FAILED = "failed"                           # 支付失败
    CANCELLED = "cancelled"                     # 已取消
    REFUNDED = "refunded"                       # 全额退款
    PARTIALLY_REFUNDED = "partially_refunded"   # 部分退款
    DISPUTED = "disputed"                       # 争议中
    CHARGEBACK = "chargeback"                   # 拒付


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    PAYPAL = "paypal"
    APPLEPAY = "applepay"
    GOOGLEPAY = "googlepay"
    BANK = "bank"
    CRYPTO = "crypto"
    KLARNA = "klarna"
    ALIPAY = "alipay"
    WECHAT = "wechat"
    UNION = "union"
    PAYPAY = "paypay"
    LINEPAY = "linepay"


class Gateway(str, Enum):
    PAYPAL = "paypal"
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    ALIPAY = "alipay"
    PAYPAY = "paypay"
    MANUAL = "manual"
    OTHER = "other"
    CARD_SIMULATED = "card_simulated"


class Currency(str, Enum):
    USD = "USD"
    GBP = "GBP"
    EUR = "EUR"
    AED = "AED"
    AUD = "AUD"
    CAD = "CAD"
    JPY = "JPY"
    CNY = "CNY"


class Market(str, Enum):
    GB = "GB"
    US = "US"
    EU = "EU"
    AE = "AE"
    AU = "AU"
    CA = "CA"
    JP = "JP"
    CN = "CN"
    GLOBAL = "global"


class PerformedBy(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ADMIN = "admin"
    GATEWAY = "gateway"


# 捕获前状态
CAPTURABLE_STATUSES = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.PROCESSING,
    PaymentStatus.AUTHORIZED,
    PaymentStatus.CAPTURING,
})

# 已结算（资金已到账）状态
SETTLED_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
    PaymentStatus.DISPUTED,
    PaymentStatus.CHARGEBACK,
})

REFUNDABLE_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED})

# 状态机：当前状态 -> 允许的目标状态
_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURING,
        PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURING, PaymentStatus.COMPLETED,
        PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.AUTHORIZED: frozenset({
        PaymentStatus.CAPTURING, PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.CAPTURING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({
        PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED,
        PaymentStatus.DISPUTED, PaymentStatus.CHARGEBACK,
    }),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({
        PaymentStatus.REFUNDED, PaymentStatus.DISPUTED, PaymentStatus.CHARGEBACK,
    }),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    # 本地过期取消后，网关仍可能完成捕获（资金在网关侧）
    PaymentStatus.CANCELLED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.DISPUTED: frozenset({PaymentStatus.CHARGEBACK}),
    PaymentStatus.CHARGEBACK: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def round2(value: Decimal | int | float | str) -> Decimal:
    """金额统一量化为两位小数（四舍五入）"""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _random_token(length: int) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_transaction_id(prefix: str) -> str:
    """形如 PAY-1700000000000-8K2J4H1ZQ 的交易号"""
    return f"{prefix.upper()[:3]}-{int(time.time() * 1000)}-{_random_token(9)}"


@dataclass(frozen=True)
class GatewayFee:
    percentage: Decimal
    fixed: Decimal
    total: Decimal

    @classmethod
    def zero(cls) -> "GatewayFee":
        return cls(percentage=Decimal("0"), fixed=ZERO, total=ZERO)


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: PaymentStatus
    timestamp: datetime
    reason: str
    performed_by: PerformedBy


@dataclass
class RefundRecord:
    amount: Decimal
    currency: str
    reason: Optional[str]
    status: RefundStatus
    processed_at: datetime
    gateway_refund_id: Optional[str] = None
    processed_by: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class FailureInfo:
    code: Optional[str] = None
    message: Optional[str] = None
    reason: Optional[str] = None
    gateway_message: Optional[str] = None
    failed_at: Optional[datetime] = None
    retry_count: int = 0


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 金额必须大于0，两位小数
    2. 状态转换必须遵循状态机，每次变更追加一条 status_history
    3. 已退款总额来自退款记录之和，不能超过支付金额
    4. gateway_transaction_id 只在首次完成时写入，之后不再覆盖
    5. gateway_fee 由 (amount, payment_method, market) 推导，见 domain.payment.pricing
    """

    id: Optional[int]
    user_id: int
    payment_method: PaymentMethod
    gateway: Gateway
    amount: Decimal
    currency: Currency
    market: Market = Market.GB
    status: PaymentStatus = PaymentStatus.PENDING

    order_id: Optional[int] = None
    gateway_order_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None

    # 金额构成
    subtotal: Optional[Decimal] = None
    tax_amount: Decimal = ZERO
    shipping_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    gateway_fee: GatewayFee = field(default_factory=GatewayFee.zero)

    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    refunds: list[RefundRecord] = field(default_factory=list)
    failure: Optional[FailureInfo] = None
    gateway_data: Optional[GatewayData] = None
    billing_address: dict = field(default_factory=dict)
    notes: Optional[str] = None

    # 时间戳
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # 乐观锁版本号，由仓储维护
    version: int = 0

    def __post_init__(self):
        """初始化后验证"""
        if self.amount is None or Decimal(self.amount) <= 0:
            raise PaymentValidationError(f"Amount must be greater than 0: {self.amount}", field="amount")
        self.amount = round2(self.amount)
        self.paid_at = ensure_utc(self.paid_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    @classmethod
    def open(
        cls,
        *,
        user_id: int,
        payment_method: PaymentMethod,
        gateway: Gateway,
        amount: Decimal,
        currency: Currency,
        market: Market,
        status: PaymentStatus = PaymentStatus.PENDING,
        reason: str = "Payment created",
        performed_by: PerformedBy = PerformedBy.SYSTEM,
        now: Optional[datetime] = None,
        **fields,
    ) -> "Payment":
        """创建新支付并记录初始状态（作为第一次状态转换）"""
        ts = now or _utcnow()
        payment = cls(
            id=None,
            user_id=user_id,
            payment_method=payment_method,
            gateway=gateway,
            amount=amount,
            currency=currency,
            market=market,
            status=status,
            created_at=ts,
            updated_at=ts,
            **fields,
        )
        payment.status_history.append(StatusHistoryEntry(status, ts, reason, performed_by))
        if status == PaymentStatus.COMPLETED:
            payment.paid_at = ts
            if not payment.gateway_transaction_id:
                payment.gateway_transaction_id = generate_transaction_id(gateway.value)
        return payment

    # ------------------------------------------------------------------
    # 派生字段（读取时计算，不存储）
    # ------------------------------------------------------------------
    @property
    def total_refunded(self) -> Decimal:
        return round2(sum(
            (r.amount for r in self.refunds if r.status != RefundStatus.FAILED),
            ZERO,
        ))

    @property
    def refundable_amount(self) -> Decimal:
        return round2(self.amount - self.total_refunded)

    @property
    def net_amount(self) -> Decimal:
        return round2(self.amount - self.gateway_fee.total)

    @property
    def is_refundable(self) -> bool:
        return self.is_refundable_at(_utcnow())

    def is_refundable_at(self, now: datetime, window_days: int = DEFAULT_REFUND_WINDOW_DAYS) -> bool:
        if self.status not in REFUNDABLE_STATUSES:
            return False
        if self.total_refunded >= self.amount:
            return False
        return self._within_refund_window(now, window_days)

    def _within_refund_window(self, now: datetime, window_days: int) -> bool:
        completed_at = self.paid_at or self.updated_at
        if completed_at is None:
            return False
        return completed_at >= ensure_utc(now) - timedelta(days=window_days)

    def is_capturable(self) -> bool:
        return self.status in CAPTURABLE_STATUSES

    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    # ------------------------------------------------------------------
    # 状态转换
    # ------------------------------------------------------------------
    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target == self.status or target in _TRANSITIONS[self.status]

    def transition_to(
        self,
        target: PaymentStatus,
        *,
        reason: Optional[str] = None,
        performed_by: PerformedBy = PerformedBy.SYSTEM,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        变更状态并追加一条历史记录

        状态未变化时返回 False 且不写历史；非法转换抛出 InvalidStatusTransitionError。
        """
        if target == self.status:
            return False
        if target not in _TRANSITIONS[self.status]:
            raise InvalidStatusTransitionError(self.status.value, target.value)
        ts = now or _utcnow()
        self.status = target
        self.status_history.append(
            StatusHistoryEntry(target, ts, reason or "Status updated", performed_by)
        )
        self.updated_at = ts
        return True

    def mark_completed(
        self,
        transaction_id: Optional[str] = None,
        *,
        reason: str = "Payment captured",
        performed_by: PerformedBy = PerformedBy.GATEWAY,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        标记支付完成

        已结算的支付重复完成是空操作（返回 False）；交易号只在首次完成时写入。
        """
        if self.is_settled():
            return False
        ts = now or _utcnow()
        self.transition_to(PaymentStatus.COMPLETED, reason=reason, performed_by=performed_by, now=ts)
        self.paid_at = self.paid_at or ts
        if not self.gateway_transaction_id:
            self.gateway_transaction_id = transaction_id or generate_transaction_id(self.gateway.value)
        self.failure = None
        return True

    def mark_failed(
        self,
        *,
        reason: str,
        code: Optional[str] = None,
        message: Optional[str] = None,
        gateway_message: Optional[str] = None,
        performed_by: PerformedBy = PerformedBy.GATEWAY,
        now: Optional[datetime] = None,
    ) -> bool:
        if self.status == PaymentStatus.FAILED:
            return False
        ts = now or _utcnow()
        self.transition_to(PaymentStatus.FAILED, reason=reason, performed_by=performed_by, now=ts)
        retries = self.failure.retry_count if self.failure else 0
        self.failure = FailureInfo(
            code=code,
            message=message or reason,
            reason=reason,
            gateway_message=gateway_message,
            failed_at=ts,
            retry_count=retries,
        )
        return True

    def mark_cancelled(
        self,
        *,
        reason: str = "Payment cancelled",
        performed_by: PerformedBy = PerformedBy.SYSTEM,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.transition_to(PaymentStatus.CANCELLED, reason=reason, performed_by=performed_by, now=now)

    def mark_disputed(self, *, reason: str = "Dispute opened", now: Optional[datetime] = None) -> bool:
        return self.transition_to(PaymentStatus.DISPUTED, reason=reason, performed_by=PerformedBy.GATEWAY, now=now)

    def mark_chargeback(self, *, reason: str = "Capture reversed", now: Optional[datetime] = None) -> bool:
        return self.transition_to(PaymentStatus.CHARGEBACK, reason=reason, performed_by=PerformedBy.GATEWAY, now=now)

    def link_order(self, order_id: int, *, now: Optional[datetime] = None) -> None:
        if self.order_id is not None and self.order_id != order_id:
            raise PaymentValidationError(
                f"Payment {self.id} already linked to order {self.order_id}", field="order_id"
            )
        self.order_id = order_id
        self.updated_at = now or _utcnow()

    # ------------------------------------------------------------------
    # 退款
    # ------------------------------------------------------------------
    def find_refund(self, gateway_refund_id: str) -> Optional[RefundRecord]:
        for record in self.refunds:
            if record.gateway_refund_id == gateway_refund_id:
                return record
        return None

    def check_refund(
        self,
        amount: Decimal,
        *,
        now: Optional[datetime] = None,
        window_days: int = DEFAULT_REFUND_WINDOW_DAYS,
        enforce_window: bool = True,
    ) -> Decimal:
        """
        校验退款前置条件，返回量化后的金额（不修改状态）

        顺序：状态 -> 金额上限 -> 退款窗口。全额退款后的再次退款报金额超限。
        """
        value = round2(amount)
        if value <= 0:
            raise PaymentValidationError(f"Refund amount must be greater than 0: {amount}", field="amount")
        if self.status not in REFUNDABLE_STATUSES and self.status != PaymentStatus.REFUNDED:
            raise NotRefundableError(self.status.value)
        if value > self.refundable_amount:
            raise ExceedsRefundableAmountError(value, self.refundable_amount)
        if enforce_window and not self._within_refund_window(now or _utcnow(), window_days):
            raise NotRefundableError(self.status.value, reason="Refund window has expired")
        return value

    def apply_refund(
        self,
        amount: Decimal,
        *,
        currency: Optional[str] = None,
        reason: Optional[str] = None,
        gateway_refund_id: Optional[str] = None,
        refund_status: RefundStatus = RefundStatus.PENDING,
        processed_by: Optional[int] = None,
        notes: Optional[str] = None,
        performed_by: PerformedBy = PerformedBy.ADMIN,
        now: Optional[datetime] = None,
        window_days: int = DEFAULT_REFUND_WINDOW_DAYS,
        enforce_window: bool = True,
    ) -> Optional[RefundRecord]:
        """
        追加退款记录并重算状态

        相同 gateway_refund_id 的退款已存在时只更新其状态（返回 None），保证重复投递幂等。
        """
        ts = now or _utcnow()
        if gateway_refund_id:
            existing = self.find_refund(gateway_refund_id)
            if existing is not None:
                if existing.status != refund_status and refund_status != RefundStatus.PENDING:
                    existing.status = refund_status
                    self.updated_at = ts
                return None

        value = self.check_refund(amount, now=ts, window_days=window_days, enforce_window=enforce_window)
        record = RefundRecord(
            amount=value,
            currency=currency or self.currency.value,
            reason=reason,
            status=refund_status,
            processed_at=ts,
            gateway_refund_id=gateway_refund_id,
            processed_by=processed_by,
            notes=notes,
        )
        self.refunds.append(record)
        target = PaymentStatus.REFUNDED if self.total_refunded >= self.amount else PaymentStatus.PARTIALLY_REFUNDED
        self.transition_to(target, reason=reason or "Refund issued", performed_by=performed_by, now=ts)
        self.updated_at = ts
        return record
