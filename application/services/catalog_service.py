"""
Catalog queries: payment methods per market, supported countries, and exchange/fee quotes.

Pure reads over static tables; no persistence involved.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from application.dtos.payments import (
    CountryDTO,
    ExchangeQuote,
    ExchangeQuoteRequest,
    FeeQuote,
    FeeQuoteRequest,
    PaymentMethodDTO,
)
from domain.payment.entity import Market, round2
from domain.payment.pricing import COUNTRIES, compute_fee, convert_currency, fee_rate_for, methods_for_market


class CatalogService:
    def list_methods(self, market: Optional[Market] = None) -> list[PaymentMethodDTO]:
        market = market or Market.GB
        result = []
        for info in methods_for_market(market):
            rate = fee_rate_for(info.method, market)
            result.append(PaymentMethodDTO(
                method=info.method,
                gateway=info.gateway,
                description=info.description,
                processing_time=info.processing_time,
                fee_percentage=rate.percentage,
                fee_fixed=round2(rate.fixed),
            ))
        return result

    def list_countries(self) -> list[CountryDTO]:
        return [CountryDTO(code=c.code, name=c.name, currency=c.currency) for c in COUNTRIES]

    def quote_exchange(self, req: ExchangeQuoteRequest) -> ExchangeQuote:
        converted, rate = convert_currency(req.amount, req.from_currency, req.to_currency)
        return ExchangeQuote(
            original_amount=req.amount,
            from_currency=req.from_currency,
            to_currency=req.to_currency,
            exchange_rate=rate,
            exchanged_amount=converted,
            timestamp=datetime.now(timezone.utc),
        )

    def quote_fee(self, req: FeeQuoteRequest) -> FeeQuote:
        amount = round2(req.amount)
        fee = compute_fee(amount, req.payment_method, req.market)
        return FeeQuote(
            amount=amount,
            payment_method=req.payment_method,
            market=req.market,
            percentage=fee.percentage,
            fixed=fee.fixed,
            total=fee.total,
            net_amount=round2(amount - fee.total),
        )
