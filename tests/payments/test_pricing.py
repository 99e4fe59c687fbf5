from decimal import Decimal

import pytest

from domain.payment.entity import Currency, Market, PaymentMethod
from domain.payment.exceptions import PaymentValidationError
from domain.payment.pricing import (
    compute_amount,
    compute_fee,
    convert_currency,
    fee_rate_for,
    methods_for_market,
    paypal_locale,
)


def test_gb_card_fee():
    fee = compute_fee(Decimal("100.00"), PaymentMethod.CARD, Market.GB)
    assert fee.percentage == Decimal("2.9")
    assert fee.fixed == Decimal("0.30")
    assert fee.total == Decimal("3.20")
    assert Decimal("100.00") - fee.total == Decimal("96.80")


def test_fee_is_deterministic():
    a = compute_fee(Decimal("57.31"), PaymentMethod.PAYPAL, Market.GB)
    b = compute_fee(Decimal("57.31"), PaymentMethod.PAYPAL, Market.GB)
    assert a == b
    assert a.total == Decimal("2.30")


@pytest.mark.parametrize(
    "method, market, expected",
    [
        (PaymentMethod.PAYPAL, Market.US, (Decimal("2.9"), Decimal("0.30"))),
        (PaymentMethod.PAYPAL, Market.AU, (Decimal("3.4"), Decimal("0.35"))),
        (PaymentMethod.CRYPTO, Market.GB, (Decimal("2.9"), Decimal("0.30"))),
    ],
)
def test_fee_rate_fallbacks(method, market, expected):
    assert tuple(fee_rate_for(method, market)) == expected


def test_compute_amount_applies_vat_shipping_and_discount():
    amount, tax = compute_amount(Decimal("100.00"), shipping=Decimal("5.00"), discount=Decimal("10.00"))
    assert tax == Decimal("20.00")
    assert amount == Decimal("115.00")


def test_currency_conversion():
    converted, rate = convert_currency(Decimal("100.00"), Currency.GBP, Currency.USD)
    assert rate == Decimal("1.27")
    assert converted == Decimal("127.00")

    same, rate = convert_currency(Decimal("12.34"), Currency.USD, Currency.USD)
    assert same == Decimal("12.34")
    assert rate == Decimal(1)


def test_missing_exchange_rate_is_validation_error():
    with pytest.raises(PaymentValidationError):
        convert_currency(Decimal("1"), Currency.AED, Currency.JPY)


def test_catalog_helpers():
    gb = [m.method for m in methods_for_market(Market.GB)]
    assert PaymentMethod.PAYPAL in gb
    assert [m.method for m in methods_for_market(Market.AE)] == gb
    assert paypal_locale(Market.GB) == "en-GB"
    assert paypal_locale("XX") == "en-US"
