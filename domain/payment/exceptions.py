"""
支付领域异常 - 支付生命周期中的错误分类

校验/前置条件类错误同步返回给调用方；上游错误保留网关的状态码与消息；
Webhook 处理中的错误记录日志后吞掉（可重试的基础设施故障除外）。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class PaymentValidationError(BusinessException):
    """请求参数不合法（在任何网关/持久化调用之前拒绝）"""

    def __init__(self, message: str, *, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="ValidationError",
            details=details,
            field=field,
        )


class UpstreamError(BusinessException):
    """网关拒绝请求或不可达"""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        issue: Optional[str] = None,
        retryable: bool = False,
        details: Optional[dict] = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self.issue = issue
        self.retryable = retryable
        full_details = {"provider": provider, "status_code": status_code, "issue": issue}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE if retryable else PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="UpstreamError",
            details=full_details,
        )


class UpstreamTimeoutError(UpstreamError):
    """网关调用超时（状态未推进，可安全重试）"""

    def __init__(self, message: str, *, provider: str):
        super().__init__(message, provider=provider, retryable=True)
        self.code = PaymentCode.TIMEOUT
        self.error_type = "UpstreamTimeout"


class UpstreamProtocolError(UpstreamError):
    """网关响应结构不符合约定，例如缺少 rel=approve 链接"""

    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(message, provider=provider, details=details)
        self.code = PaymentCode.PROTOCOL_ERROR
        self.error_type = "UpstreamProtocolError"


class PaymentNotFoundError(BusinessException):
    """给定键（及所有者）下不存在支付记录"""

    def __init__(self, identifier: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="NotFoundError",
            details={"identifier": identifier},
        )


class AlreadyProcessedError(BusinessException):
    """订单已被捕获/作废，无法再次捕获"""

    def __init__(self, gateway_order_id: str, *, status: Optional[str] = None, payment_id: Optional[int] = None):
        super().__init__(
            code=PaymentCode.ALREADY_PROCESSED,
            message="Order cannot be captured. It may already be completed or cancelled.",
            error_type="AlreadyProcessedError",
            details={"gateway_order_id": gateway_order_id, "status": status, "payment_id": payment_id},
        )


class NotRefundableError(BusinessException):
    def __init__(self, status: str, reason: str = "Payment is not refundable"):
        super().__init__(
            code=PaymentCode.NOT_REFUNDABLE,
            message=reason,
            error_type="NotRefundableError",
            details={"status": status},
        )


class ExceedsRefundableAmountError(BusinessException):
    def __init__(self, requested: Decimal, refundable: Decimal):
        super().__init__(
            code=PaymentCode.EXCEEDS_REFUNDABLE_AMOUNT,
            message=f"Maximum refundable amount is {refundable}",
            error_type="ExceedsRefundableAmountError",
            details={"requested": str(requested), "refundable": str(refundable)},
            field="amount",
        )


class InvalidStatusTransitionError(BusinessException):
    def __init__(self, current: str, target: str):
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Cannot transition payment from {current} to {target}",
            error_type="InvalidStatusTransition",
            details={"current": current, "target": target},
            field="status",
        )


class InternalInconsistencyError(BusinessException):
    """本地状态与网关事件不一致（Webhook 中记录后忽略）"""

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.INTERNAL_INCONSISTENCY,
            message=message,
            error_type="InternalInconsistencyError",
            details=details,
        )


class CardDeclinedError(BusinessException):
    def __init__(self, failure_code: str = "CARD_DECLINED", message: str = "Card payment failed. Please try another card."):
        super().__init__(
            code=PaymentCode.CARD_DECLINED,
            message=message,
            error_type="CardDeclined",
            details={"failure_code": failure_code},
        )


class ConcurrentUpdateError(BusinessException):
    """条件更新失败：记录已被并发修改"""

    def __init__(self, payment_id: Optional[int], expected_version: int):
        super().__init__(
            code=PaymentCode.CONCURRENT_UPDATE,
            message="Payment was modified concurrently",
            error_type="ConcurrentUpdate",
            details={"payment_id": payment_id, "expected_version": expected_version},
        )
