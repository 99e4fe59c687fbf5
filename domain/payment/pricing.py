"""
定价规则 - 手续费、金额推导与汇率

全部为纯函数，由应用层在持久化前显式调用（不依赖隐式钩子）。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Mapping, NamedTuple, Optional

from domain.payment.entity import (
    Currency,
    GatewayFee,
    Market,
    Payment,
    PaymentMethod,
    round2,
)
from domain.payment.exceptions import PaymentValidationError


DEFAULT_VAT_RATE = Decimal("0.20")


class FeeRate(NamedTuple):
    percentage: Decimal
    fixed: Decimal


def _rate(percentage: str, fixed: str) -> FeeRate:
    return FeeRate(Decimal(percentage), Decimal(fixed))


DEFAULT_FEE_MARKET = Market.GB
DEFAULT_FEE_RATE = _rate("2.9", "0.30")

FEE_SCHEDULE: Mapping[Market, Mapping[PaymentMethod, FeeRate]] = {
    Market.GB: {
        PaymentMethod.CARD: _rate("2.9", "0.30"),
        PaymentMethod.PAYPAL: _rate("3.4", "0.35"),
        PaymentMethod.APPLEPAY: _rate("2.5", "0.25"),
        PaymentMethod.GOOGLEPAY: _rate("2.5", "0.25"),
        PaymentMethod.BANK: _rate("0", "0"),
    },
    Market.US: {
        PaymentMethod.CARD: _rate("2.9", "0.30"),
        PaymentMethod.PAYPAL: _rate("2.9", "0.30"),
        PaymentMethod.CRYPTO: _rate("1.0", "0"),
        PaymentMethod.KLARNA: _rate("3.0", "0.30"),
    },
    Market.CN: {
        PaymentMethod.ALIPAY: _rate("1.5", "0.15"),
        PaymentMethod.WECHAT: _rate("1.5", "0.15"),
        PaymentMethod.UNION: _rate("2.0", "0.20"),
    },
    Market.JP: {
        PaymentMethod.CARD: _rate("3.5", "0.35"),
        PaymentMethod.PAYPAY: _rate("1.9", "0.20"),
        PaymentMethod.LINEPAY: _rate("2.0", "0.20"),
    },
}


def fee_rate_for(payment_method: PaymentMethod, market: Market) -> FeeRate:
    """未列出的市场回退到 GB 费率表；表内没有的支付方式回退到 2.9% + 0.30"""
    table = FEE_SCHEDULE.get(market) or FEE_SCHEDULE[DEFAULT_FEE_MARKET]
    return table.get(payment_method, DEFAULT_FEE_RATE)


def compute_fee(amount: Decimal, payment_method: PaymentMethod, market: Market) -> GatewayFee:
    rate = fee_rate_for(payment_method, market)
    total = round2(Decimal(str(amount)) * rate.percentage / Decimal(100) + rate.fixed)
    return GatewayFee(percentage=rate.percentage, fixed=round2(rate.fixed), total=total)


def compute_amount(
    subtotal: Decimal,
    *,
    shipping: Decimal = Decimal("0"),
    discount: Decimal = Decimal("0"),
    vat_rate: Decimal = DEFAULT_VAT_RATE,
) -> tuple[Decimal, Decimal]:
    """返回 (amount, tax_amount)，amount = round2(subtotal*(1+VAT) + shipping - discount)"""
    subtotal = Decimal(str(subtotal))
    tax = round2(subtotal * vat_rate)
    amount = round2(subtotal * (Decimal(1) + vat_rate) + Decimal(str(shipping)) - Decimal(str(discount)))
    return amount, tax


def refresh_derived_fields(payment: Payment, *, vat_rate: Decimal = DEFAULT_VAT_RATE) -> Payment:
    """
    持久化前重算派生字段

    - 提供了 subtotal 时按 VAT 重算 amount 与 tax_amount
    - 始终整体覆盖 gateway_fee
    """
    if payment.subtotal is not None:
        amount, tax = compute_amount(
            payment.subtotal,
            shipping=payment.shipping_amount,
            discount=payment.discount_amount,
            vat_rate=vat_rate,
        )
        if amount <= 0:
            raise PaymentValidationError(f"Amount must be greater than 0: {amount}", field="amount")
        payment.amount = amount
        payment.tax_amount = tax
    payment.gateway_fee = compute_fee(payment.amount, payment.payment_method, payment.market)
    return payment


# ----------------------------------------------------------------------
# 汇率（静态近似表，仅用于展示与网关结算币种换算）
# ----------------------------------------------------------------------
EXCHANGE_RATES: Mapping[Currency, Mapping[Currency, Decimal]] = {
    Currency.GBP: {
        Currency.USD: Decimal("1.27"), Currency.EUR: Decimal("1.17"), Currency.AED: Decimal("4.67"),
        Currency.AUD: Decimal("1.92"), Currency.CAD: Decimal("1.70"), Currency.JPY: Decimal("187"),
        Currency.CNY: Decimal("9.1"),
    },
    Currency.USD: {
        Currency.GBP: Decimal("0.79"), Currency.EUR: Decimal("0.92"), Currency.AED: Decimal("3.67"),
        Currency.AUD: Decimal("1.51"), Currency.CAD: Decimal("1.34"), Currency.JPY: Decimal("147"),
        Currency.CNY: Decimal("7.17"),
    },
    Currency.EUR: {
        Currency.GBP: Decimal("0.85"), Currency.USD: Decimal("1.09"), Currency.AED: Decimal("4.00"),
        Currency.AUD: Decimal("1.64"), Currency.CAD: Decimal("1.45"), Currency.JPY: Decimal("160"),
        Currency.CNY: Decimal("7.79"),
    },
    Currency.AED: {Currency.GBP: Decimal("0.21"), Currency.USD: Decimal("0.27"), Currency.EUR: Decimal("0.25")},
    Currency.AUD: {Currency.GBP: Decimal("0.52"), Currency.USD: Decimal("0.66"), Currency.EUR: Decimal("0.61")},
    Currency.CAD: {Currency.GBP: Decimal("0.59"), Currency.USD: Decimal("0.75"), Currency.EUR: Decimal("0.69")},
    Currency.JPY: {Currency.GBP: Decimal("0.0053"), Currency.USD: Decimal("0.0068"), Currency.EUR: Decimal("0.0063")},
    Currency.CNY: {Currency.GBP: Decimal("0.11"), Currency.USD: Decimal("0.14"), Currency.EUR: Decimal("0.13")},
}


def exchange_rate(from_currency: Currency, to_currency: Currency) -> Decimal:
    if from_currency == to_currency:
        return Decimal(1)
    rate = EXCHANGE_RATES.get(from_currency, {}).get(to_currency)
    if rate is None:
        raise PaymentValidationError(
            f"Exchange rate not available for {from_currency.value} to {to_currency.value}",
            field="to_currency",
            details={"from": from_currency.value, "to": to_currency.value},
        )
    return rate


def convert_currency(amount: Decimal, from_currency: Currency, to_currency: Currency) -> tuple[Decimal, Decimal]:
    """返回 (换算后金额, 使用的汇率)"""
    rate = exchange_rate(from_currency, to_currency)
    return round2(Decimal(str(amount)) * rate), rate


# ----------------------------------------------------------------------
# 目录数据：各市场可用支付方式、国家与币种、PayPal 页面语言
# ----------------------------------------------------------------------
class MethodInfo(NamedTuple):
    method: PaymentMethod
    gateway: str
    description: str
    processing_time: str


METHOD_DESCRIPTIONS: Mapping[PaymentMethod, str] = {
    PaymentMethod.CARD: "Visa, Mastercard, American Express",
    PaymentMethod.PAYPAL: "Secure payment via PayPal",
    PaymentMethod.APPLEPAY: "Fast and secure Apple Pay",
    PaymentMethod.GOOGLEPAY: "Google Pay for Android users",
    PaymentMethod.BANK: "Direct bank transfer",
    PaymentMethod.CRYPTO: "Bitcoin, Ethereum, USDC",
    PaymentMethod.KLARNA: "Buy now, pay later",
    PaymentMethod.ALIPAY: "Popular in China & Asia",
    PaymentMethod.WECHAT: "WeChat Pay for Chinese users",
    PaymentMethod.UNION: "Union Pay cards",
    PaymentMethod.PAYPAY: "Popular in Japan",
    PaymentMethod.LINEPAY: "Line Pay for Japanese users",
}

_PROCESSING_TIMES: Mapping[PaymentMethod, str] = {
    PaymentMethod.BANK: "1-3 business days",
    PaymentMethod.CRYPTO: "10-30 minutes",
}

_MARKET_METHODS: Mapping[Market, tuple[tuple[PaymentMethod, str], ...]] = {
    Market.GB: (
        (PaymentMethod.CARD, "stripe"),
        (PaymentMethod.PAYPAL, "paypal"),
        (PaymentMethod.APPLEPAY, "stripe"),
        (PaymentMethod.GOOGLEPAY, "stripe"),
        (PaymentMethod.BANK, "manual"),
    ),
    Market.US: (
        (PaymentMethod.CARD, "stripe"),
        (PaymentMethod.PAYPAL, "paypal"),
        (PaymentMethod.APPLEPAY, "stripe"),
        (PaymentMethod.GOOGLEPAY, "stripe"),
        (PaymentMethod.CRYPTO, "crypto"),
        (PaymentMethod.KLARNA, "klarna"),
    ),
    Market.CN: (
        (PaymentMethod.ALIPAY, "alipay"),
        (PaymentMethod.WECHAT, "wechat"),
        (PaymentMethod.UNION, "union"),
    ),
    Market.JP: (
        (PaymentMethod.CARD, "stripe"),
        (PaymentMethod.PAYPAY, "paypay"),
        (PaymentMethod.LINEPAY, "line"),
    ),
}


def methods_for_market(market: Market) -> list[MethodInfo]:
    entries = _MARKET_METHODS.get(market) or _MARKET_METHODS[Market.GB]
    return [
        MethodInfo(
            method=method,
            gateway=gateway,
            description=METHOD_DESCRIPTIONS[method],
            processing_time=_PROCESSING_TIMES.get(method, "Instant"),
        )
        for method, gateway in entries
    ]


class CountryInfo(NamedTuple):
    code: str
    name: str
    currency: Currency


COUNTRIES: tuple[CountryInfo, ...] = (
    CountryInfo("GB", "United Kingdom", Currency.GBP),
    CountryInfo("US", "United States", Currency.USD),
    CountryInfo("EU", "European Union", Currency.EUR),
    CountryInfo("AE", "UAE", Currency.AED),
    CountryInfo("AU", "Australia", Currency.AUD),
    CountryInfo("CA", "Canada", Currency.CAD),
    CountryInfo("JP", "Japan", Currency.JPY),
    CountryInfo("CN", "China", Currency.CNY),
)

_PAYPAL_LOCALES: Mapping[str, str] = {
    "GB": "en-GB",
    "US": "en-US",
    "EU": "en-EN",
    "CN": "zh-CN",
    "JP": "ja-JP",
    "FR": "fr-FR",
    "DE": "de-DE",
    "ES": "es-ES",
    "IT": "it-IT",
}


def paypal_locale(market: Optional[Market | str]) -> str:
    key = market.value if isinstance(market, Market) else (market or "")
    return _PAYPAL_LOCALES.get(key, "en-US")
