"""
网关专属数据 - 按网关区分的判别联合

PayPal 与模拟银行卡各自的字段在这里是静态已知的；其余部分保持不透明（raw）。
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Literal, Optional, Union


@dataclass
class PayPalLink:
    href: str
    rel: str
    method: Optional[str] = None


@dataclass
class PayPalPayer:
    payer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class PayPalData:
    """PayPal 订单/捕获相关数据"""

    kind: Literal["paypal"] = "paypal"
    order_id: Optional[str] = None
    create_time: Optional[str] = None
    links: list[PayPalLink] = field(default_factory=list)
    original_currency: Optional[str] = None
    original_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    items: list[dict[str, Any]] = field(default_factory=list)
    payer: Optional[PayPalPayer] = None
    capture_id: Optional[str] = None
    capture_status: Optional[str] = None


@dataclass
class CardData:
    """模拟银行卡数据（仅保存脱敏字段）"""

    kind: Literal["card"] = "card"
    last_four: Optional[str] = None
    brand: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    country: Optional[str] = None
    funding: Optional[str] = None
    authorization_code: Optional[str] = None


GatewayData = Union[PayPalData, CardData]


def gateway_data_to_dict(data: Optional[GatewayData]) -> dict[str, Any]:
    if data is None:
        return {}
    raw = asdict(data)
    for key in ("original_amount", "exchange_rate"):
        if raw.get(key) is not None:
            raw[key] = str(raw[key])
    return raw


def gateway_data_from_dict(raw: Optional[dict[str, Any]]) -> Optional[GatewayData]:
    if not raw:
        return None
    kind = raw.get("kind")
    if kind == "paypal":
        payer = raw.get("payer")
        return PayPalData(
            order_id=raw.get("order_id"),
            create_time=raw.get("create_time"),
            links=[PayPalLink(**link) for link in raw.get("links") or []],
            original_currency=raw.get("original_currency"),
            original_amount=Decimal(raw["original_amount"]) if raw.get("original_amount") is not None else None,
            exchange_rate=Decimal(raw["exchange_rate"]) if raw.get("exchange_rate") is not None else None,
            items=list(raw.get("items") or []),
            payer=PayPalPayer(**payer) if payer else None,
            capture_id=raw.get("capture_id"),
            capture_status=raw.get("capture_status"),
        )
    if kind == "card":
        fields = {k: v for k, v in raw.items() if k != "kind"}
        return CardData(**fields)
    raise ValueError(f"Unknown gateway data kind: {kind!r}")


def detect_card_brand(number: str) -> str:
    digits = "".join(ch for ch in number if ch.isdigit())
    if digits.startswith("4"):
        return "visa"
    if digits.startswith("5"):
        return "mastercard"
    if digits.startswith("3"):
        return "amex"
    if digits.startswith("6"):
        return "discover"
    return "unknown"
