"""
用户领域实体 - 支付流程只关心调用方身份
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from domain.common.exceptions import UserInactiveException


@dataclass
class User:
    """用户实体（调用方身份）"""

    id: Optional[int]
    username: str
    email: str
    full_name: Optional[str] = None
    is_active: bool = True
    is_superuser: bool = False
    created_at: Optional[datetime] = None

    def ensure_active(self) -> None:
        """业务规则：停用账户不能发起支付"""
        if not self.is_active:
            raise UserInactiveException()

    def can_view(self, owner_id: int) -> bool:
        """本人或管理员可以查看支付"""
        return self.is_superuser or self.id == owner_id
