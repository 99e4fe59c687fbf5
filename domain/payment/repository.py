"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import Payment, PaymentStatus, PaymentMethod, Market


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（返回带 id 与 version 的实体）"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_gateway_order(self, gateway_order_id: str, user_id: Optional[int] = None) -> Optional[Payment]:
        """根据网关订单号获取支付；提供 user_id 时只匹配该用户的记录"""
        pass

    @abstractmethod
    async def get_by_transaction_id(self, gateway_transaction_id: str) -> Optional[Payment]:
        """根据网关交易号（捕获ID）获取支付"""
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: int,
        skip: int = 0,
        limit: int = 100,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        market: Optional[Market] = None,
    ) -> List[Payment]:
        """获取用户的支付列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def count_by_user(
        self,
        user_id: int,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        market: Optional[Market] = None,
    ) -> int:
        """统计用户的支付数量"""
        pass

    @abstractmethod
    async def list_stale_pending(self, created_before: datetime, limit: int = 100) -> List[Payment]:
        """获取创建时间早于给定时间、仍处于 pending 的支付"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """
        条件更新：仅当存储中的 version 等于 payment.version 时写入

        成功后返回 version+1 的实体；版本不匹配抛出 ConcurrentUpdateError。
        """
        pass
