"""
Payment specific codes and PayPal status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Lifecycle / business rule errors (2xxxx, payment range)
    PAYMENT_NOT_FOUND = 20100
    ALREADY_PROCESSED = 20101
    NOT_REFUNDABLE = 20102
    EXCEEDS_REFUNDABLE_AMOUNT = 20103
    INVALID_TRANSITION = 20104
    CARD_DECLINED = 20105
    CONCURRENT_UPDATE = 20106
    INTERNAL_INCONSISTENCY = 20107

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    TIMEOUT = 60003
    PROTOCOL_ERROR = 60005


# PayPal order / capture status -> internal payment status
PAYPAL_STATUS_TO_INTERNAL = {
    # Orders v2
    "CREATED": "pending",
    "SAVED": "pending",
    "APPROVED": "authorized",
    "PAYER_ACTION_REQUIRED": "pending",
    "VOIDED": "cancelled",
    # Orders v2 + captures
    "COMPLETED": "completed",
    "PENDING": "capturing",
    "DECLINED": "failed",
    "FAILED": "failed",
    "REFUNDED": "refunded",
    "PARTIALLY_REFUNDED": "partially_refunded",
}

# PayPal 422 issues meaning the order can no longer be captured
PAYPAL_ALREADY_PROCESSED_ISSUES = frozenset({
    "ORDER_ALREADY_CAPTURED",
    "ORDER_ALREADY_AUTHORIZED",
    "ORDER_COMPLETED_OR_VOIDED",
    "ORDER_EXPIRED",
    "DUPLICATE_INVOICE_ID",
})


__all__ = ["PaymentCode", "PAYPAL_STATUS_TO_INTERNAL", "PAYPAL_ALREADY_PROCESSED_ISSUES"]
