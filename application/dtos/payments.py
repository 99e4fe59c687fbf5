"""
Payment DTOs (Pydantic v2) used at application boundaries.

Request models validate shape only; money rules (positive amounts, refund limits)
are enforced by the domain so that direct service callers get the same errors.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_serializer, model_validator

from core.config import settings
from domain.order.entity import Order
from domain.payment.entity import (
    Currency,
    Market,
    Payment,
    PaymentMethod,
    PaymentStatus,
)


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


class PaginationParams(DTOBase):
    """分页参数（页码/每页大小），自动派生 skip/limit"""
    page: int = Field(1, ge=1, description="页码，从1开始")
    size: int = Field(
        default=settings.DEFAULT_PAGE_SIZE,
        ge=1,
        le=settings.MAX_PAGE_SIZE,
        description="每页大小",
    )

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.size

    @property
    def limit(self) -> int:
        return self.size


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------
class OrderItem(DTOBase):
    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(ge=0)


class PriceBreakdown(DTOBase):
    """Either ``amount`` or ``subtotal`` must be supplied.

    With a subtotal the charged amount is derived: subtotal * (1 + VAT) + shipping - discount.
    """
    amount: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    shipping_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")

    @model_validator(mode="after")
    def _require_amount_or_subtotal(self):
        if self.amount is None and self.subtotal is None:
            raise ValueError("amount or subtotal is required")
        return self


class CreatePayPalOrder(PriceBreakdown):
    currency: Currency = Currency.USD
    market: Market = Market.GB
    items: list[OrderItem] = Field(default_factory=list)
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    billing_address: Optional[dict[str, Any]] = None


class CardDetails(DTOBase):
    number: str = Field(repr=False)
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int = Field(ge=2000, le=2100)
    cvv: str = Field(repr=False)
    holder_name: Optional[str] = None

    @field_validator("number")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        digits = "".join(ch for ch in v if not ch.isspace() and ch != "-")
        if not digits.isdigit() or not 12 <= len(digits) <= 19:
            raise ValueError("card number must contain 12-19 digits")
        return digits

    @field_validator("cvv")
    @classmethod
    def _cvv_digits(cls, v: str) -> str:
        if not v.isdigit() or len(v) not in (3, 4):
            raise ValueError("cvv must be 3 or 4 digits")
        return v


class CreateCardPayment(PriceBreakdown):
    currency: Currency = Currency.GBP
    market: Market = Market.GB
    card: CardDetails
    billing_address: dict[str, Any] = Field(default_factory=dict)
    items: list[OrderItem] = Field(default_factory=list)


class RefundCreate(DTOBase):
    amount: Decimal
    reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)


class ExchangeQuoteRequest(DTOBase):
    amount: Decimal = Field(ge=0)
    from_currency: Currency
    to_currency: Currency


class FeeQuoteRequest(DTOBase):
    amount: Decimal = Field(gt=0)
    payment_method: PaymentMethod
    market: Market = Market.GB


class PaymentListQuery(PaginationParams):
    status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    market: Optional[Market] = None


# ----------------------------------------------------------------------
# Gateway-facing request/result types (used by application ports)
# ----------------------------------------------------------------------
class GatewayLink(BaseModel):
    href: str
    rel: str
    method: Optional[str] = None


class PayPalItemRequest(BaseModel):
    name: str
    quantity: int
    unit_amount: Decimal


class PayPalOrderRequest(BaseModel):
    """Order request already converted into the settlement currency."""
    reference_id: str
    currency: str
    amount: Decimal
    item_total: Decimal
    tax_total: Decimal = Decimal("0.00")
    shipping: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    items: list[PayPalItemRequest] = Field(default_factory=list)
    description: str
    brand_name: str
    return_url: str
    cancel_url: str
    locale: str


class CreatedGatewayOrder(BaseModel):
    id: str
    status: str
    create_time: Optional[str] = None
    links: list[GatewayLink] = Field(default_factory=list)

    def approval_url(self) -> Optional[str]:
        for link in self.links:
            if link.rel == "approve":
                return link.href
        return None


class PayerInfo(BaseModel):
    payer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class CaptureResult(BaseModel):
    """Order state after capture (or as fetched); ``capture_id`` is the settled transaction id."""
    order_id: str
    status: str
    capture_id: Optional[str] = None
    capture_status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payer: PayerInfo = Field(default_factory=PayerInfo)
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_captured(self) -> bool:
        return bool(self.capture_id) and (self.capture_status or self.status) == "COMPLETED"


class GatewayRefundResult(BaseModel):
    refund_id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class CardAuthorizationRequest(BaseModel):
    amount: Decimal
    currency: str
    card_number: str = Field(repr=False)
    expiry_month: int
    expiry_year: int
    cvv: str = Field(repr=False)


class CardAuthorization(BaseModel):
    approved: bool
    authorization_code: Optional[str] = None
    failure_code: Optional[str] = None
    message: Optional[str] = None


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------
class SettlementAmount(DTOBase):
    original: Decimal
    original_currency: str
    settlement: Decimal
    settlement_currency: str
    exchange_rate: Decimal


class PayPalOrderCreated(DTOBase):
    payment_id: int
    gateway_order_id: str
    approval_url: str
    amount: SettlementAmount


class StatusHistoryDTO(DTOBase):
    status: PaymentStatus
    timestamp: datetime
    reason: str
    performed_by: str


class RefundDTO(DTOBase):
    amount: Decimal
    currency: str
    reason: Optional[str] = None
    status: str
    gateway_refund_id: Optional[str] = None
    processed_at: datetime


class FeeDTO(DTOBase):
    percentage: Decimal
    fixed: Decimal
    total: Decimal


class PaymentDTO(DTOBase):
    id: int
    user_id: int
    order_id: Optional[int] = None
    payment_method: PaymentMethod
    gateway: str
    gateway_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Decimal
    currency: Currency
    market: Market
    subtotal: Optional[Decimal] = None
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    gateway_fee: FeeDTO
    net_amount: Decimal
    status: PaymentStatus
    total_refunded: Decimal
    refundable_amount: Decimal
    is_refundable: bool
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    status_history: list[StatusHistoryDTO] = Field(default_factory=list)
    refunds: list[RefundDTO] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, payment: Payment, *, now: datetime, refund_window_days: int) -> "PaymentDTO":
        return cls(
            id=payment.id,
            user_id=payment.user_id,
            order_id=payment.order_id,
            payment_method=payment.payment_method,
            gateway=payment.gateway.value,
            gateway_order_id=payment.gateway_order_id,
            transaction_id=payment.gateway_transaction_id,
            amount=payment.amount,
            currency=payment.currency,
            market=payment.market,
            subtotal=payment.subtotal,
            tax_amount=payment.tax_amount,
            shipping_amount=payment.shipping_amount,
            discount_amount=payment.discount_amount,
            gateway_fee=FeeDTO(
                percentage=payment.gateway_fee.percentage,
                fixed=payment.gateway_fee.fixed,
                total=payment.gateway_fee.total,
            ),
            net_amount=payment.net_amount,
            status=payment.status,
            total_refunded=payment.total_refunded,
            refundable_amount=payment.refundable_amount,
            is_refundable=payment.is_refundable_at(now, refund_window_days),
            paid_at=payment.paid_at,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            failure_reason=payment.failure.reason if payment.failure else None,
            status_history=[
                StatusHistoryDTO(
                    status=e.status,
                    timestamp=e.timestamp,
                    reason=e.reason,
                    performed_by=e.performed_by.value,
                )
                for e in payment.status_history
            ],
            refunds=[
                RefundDTO(
                    amount=r.amount,
                    currency=r.currency,
                    reason=r.reason,
                    status=r.status.value,
                    gateway_refund_id=r.gateway_refund_id,
                    processed_at=r.processed_at,
                )
                for r in payment.refunds
            ],
        )


class OrderDTO(DTOBase):
    id: int
    order_number: str
    payment_id: int
    amount: Decimal
    currency: str
    market: str
    payment_method: str
    status: str
    items: list[dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, order: Order) -> "OrderDTO":
        return cls(
            id=order.id,
            order_number=order.order_number,
            payment_id=order.payment_id,
            amount=order.amount,
            currency=order.currency,
            market=order.market,
            payment_method=order.payment_method,
            status=order.status.value,
            items=order.items,
            created_at=order.created_at,
        )


class PaymentWithOrder(DTOBase):
    """``order`` stays empty while the gateway still reports the capture as pending or declined."""
    payment: PaymentDTO
    order: Optional[OrderDTO] = None


class PaymentMethodDTO(DTOBase):
    method: PaymentMethod
    gateway: str
    description: str
    processing_time: str
    fee_percentage: Decimal
    fee_fixed: Decimal


class CountryDTO(DTOBase):
    code: str
    name: str
    currency: Currency


class ExchangeQuote(DTOBase):
    original_amount: Decimal
    from_currency: Currency
    to_currency: Currency
    exchange_rate: Decimal
    exchanged_amount: Decimal
    timestamp: datetime


class FeeQuote(DTOBase):
    amount: Decimal
    payment_method: PaymentMethod
    market: Market
    percentage: Decimal
    fixed: Decimal
    total: Decimal
    net_amount: Decimal


class WebhookAck(DTOBase):
    status: Literal["processed", "ignored", "duplicate", "rejected"]
    event_type: Optional[str] = None
    event_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)
