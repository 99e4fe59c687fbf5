"""
Payments API routes.

Thin HTTP layer over the payment, webhook and catalog application services;
all envelopes use ``core.response`` and errors flow to the global handlers.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.dependencies import (
    get_catalog_service,
    get_current_superuser,
    get_current_user,
    get_payment_service,
    get_webhook_service,
)
from api.middleware import get_request_id
from application.dtos.payments import (
    CountryDTO,
    CreateCardPayment,
    CreatePayPalOrder,
    ExchangeQuote,
    ExchangeQuoteRequest,
    FeeQuote,
    FeeQuoteRequest,
    PaymentDTO,
    PaymentListQuery,
    PaymentMethodDTO,
    PaymentWithOrder,
    PayPalOrderCreated,
    RefundCreate,
    WebhookAck,
)
from application.services.catalog_service import CatalogService
from application.services.payment_service import PaymentApplicationService
from application.services.webhook_service import PayPalWebhookService, is_transient_error
from core.config import settings
from core.logging_config import get_logger
from core.response import PaginatedData, Response as ApiResponse, error_response, paginated_response, success_response
from core.settings import payment_settings
from domain.payment.entity import Market, PaymentMethod, PaymentStatus
from domain.user.entity import User
from shared.codes import BusinessCode


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: Optional[str], allowlist: list[str]) -> bool:
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


# ----------------------------------------------------------------------
# Catalog (public)
# ----------------------------------------------------------------------
@router.get("/methods", summary="Payment methods for a market", response_model=ApiResponse[list[PaymentMethodDTO]])
async def list_payment_methods(
    market: Optional[Market] = Query(default=None),
    catalog: CatalogService = Depends(get_catalog_service),
):
    return success_response(data=catalog.list_methods(market))


@router.get("/countries", summary="Supported countries and currencies", response_model=ApiResponse[list[CountryDTO]])
async def list_countries(catalog: CatalogService = Depends(get_catalog_service)):
    return success_response(data=catalog.list_countries())


@router.post("/exchange", summary="Exchange quote", response_model=ApiResponse[ExchangeQuote])
async def exchange_quote(payload: ExchangeQuoteRequest, catalog: CatalogService = Depends(get_catalog_service)):
    return success_response(data=catalog.quote_exchange(payload))


@router.post("/fees/quote", summary="Gateway fee quote", response_model=ApiResponse[FeeQuote])
async def fee_quote(payload: FeeQuoteRequest, catalog: CatalogService = Depends(get_catalog_service)):
    return success_response(data=catalog.quote_fee(payload))


# ----------------------------------------------------------------------
# PayPal
# ----------------------------------------------------------------------
@router.post("/paypal/orders", summary="Create PayPal order", response_model=ApiResponse[PayPalOrderCreated])
async def create_paypal_order(
    payload: CreatePayPalOrder,
    current_user: User = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    created = await service.create_paypal_order(current_user.id, payload)
    return success_response(data=created, message="PayPal order created")


@router.post(
    "/paypal/orders/{gateway_order_id}/capture",
    summary="Capture approved PayPal order",
    response_model=ApiResponse[PaymentWithOrder],
)
async def capture_paypal_order(
    gateway_order_id: str,
    current_user: User = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.capture_paypal_order(current_user.id, gateway_order_id)
    message = "Payment captured" if result.order is not None else "Capture pending"
    return success_response(data=result, message=message)


# ----------------------------------------------------------------------
# Simulated card
# ----------------------------------------------------------------------
@router.post("/card", summary="Charge a card (simulated)", response_model=ApiResponse[PaymentWithOrder])
async def create_card_payment(
    payload: CreateCardPayment,
    current_user: User = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.create_card_payment(current_user.id, payload)
    return success_response(data=result, message="Payment completed")


# ----------------------------------------------------------------------
# Webhooks (public, signature verified)
# ----------------------------------------------------------------------
@router.post("/webhooks/paypal", summary="PayPal webhook", response_model=ApiResponse[WebhookAck])
async def paypal_webhook(request: Request, service: PayPalWebhookService = Depends(get_webhook_service)):
    remote_ip = request.client.host if request.client else None
    if not _ip_allowed(remote_ip, payment_settings.webhook.ip_allowlist or []):
        logger.warning("webhook_ip_not_allowed", remote_ip=remote_ip)
        return success_response(data=WebhookAck(status="rejected"), message="Source not allowed")

    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" not in content_type:
        return success_response(data=WebhookAck(status="ignored"), message="Unsupported content type")

    body = await request.body()
    try:
        ack = await service.handle(dict(request.headers), body)
    except Exception as exc:
        if is_transient_error(exc):
            # 503 让 PayPal 稍后重投
            logger.warning("webhook_processing_deferred", error_type=type(exc).__name__, error=str(exc))
            content = error_response(
                code=BusinessCode.SERVICE_UNAVAILABLE,
                message="Temporarily unable to process webhook",
                error_type="ServiceUnavailable",
                request_id=get_request_id(),
            )
            return JSONResponse(status_code=503, content=content.model_dump(mode="json"))
        logger.error("webhook_processing_failed", error_type=type(exc).__name__, error=str(exc), exc_info=True)
        return success_response(data=WebhookAck(status="ignored"), message="Webhook not applied")
    return success_response(data=ack, message=f"Webhook {ack.status}")


# ----------------------------------------------------------------------
# Queries and refunds
# ----------------------------------------------------------------------
@router.get("", summary="Payment history", response_model=ApiResponse[PaginatedData[PaymentDTO]])
async def list_payments(
    page: int = Query(1, ge=1),
    size: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    status: Optional[PaymentStatus] = Query(default=None),
    method: Optional[PaymentMethod] = Query(default=None),
    market: Optional[Market] = Query(default=None),
    current_user: User = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    query = PaymentListQuery(page=page, size=size, status=status, payment_method=method, market=market)
    items, total = await service.list_payments(current_user.id, query)
    return paginated_response(items=items, total=total, page=query.page, size=query.size)


@router.get("/{payment_id}", summary="Payment status", response_model=ApiResponse[PaymentDTO])
async def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    return success_response(data=await service.get_payment(current_user, payment_id))


@router.post("/{payment_id}/refunds", summary="Refund a payment (admin)", response_model=ApiResponse[PaymentDTO])
async def refund_payment(
    payment_id: int,
    payload: RefundCreate,
    admin: User = Depends(get_current_superuser),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    updated = await service.refund_payment(admin, payment_id, payload)
    return success_response(data=updated, message="Refund recorded")
