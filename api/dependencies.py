"""
API依赖项 - 认证和服务装配
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from application.services.catalog_service import CatalogService
from application.services.payment_service import PaymentApplicationService
from application.services.token_service import TokenService
from application.services.webhook_service import PayPalWebhookService
from core.exceptions import ForbiddenException, UnauthorizedException
from core.settings import payment_settings
from domain.user.entity import User
from infrastructure.external.cache import get_redis_client
from infrastructure.external.payments import get_card_authorizer, get_paypal_client, get_webhook_verifier
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token issued by the marketplace auth service",
    auto_error=False,
)


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从 Authorization: Bearer 头中提取 token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials
    raise UnauthorizedException("Authentication credentials were not provided")


async def get_token_service() -> TokenService:
    return TokenService()


async def get_current_user(
    token: str = Depends(get_token),
    tokens: TokenService = Depends(get_token_service),
) -> User:
    """获取当前登录用户（必须存在且处于激活状态）"""
    user_id = tokens.verify_access_token(token)
    async with SQLAlchemyUnitOfWork(readonly=True) as uow:
        user = await uow.user_repository.get_by_id(user_id)
    if user is None:
        raise UnauthorizedException("Invalid authentication credentials")
    user.ensure_active()
    return user


async def get_current_superuser(current_user: User = Depends(get_current_user)) -> User:
    """获取当前超级管理员用户"""
    if not current_user.is_superuser:
        raise ForbiddenException("Administrator privileges required")
    return current_user


async def get_payment_service() -> PaymentApplicationService:
    return PaymentApplicationService(
        uow_factory=SQLAlchemyUnitOfWork,
        paypal=get_paypal_client(),
        card_authorizer=get_card_authorizer(),
        settings=payment_settings,
    )


async def get_webhook_service() -> PayPalWebhookService:
    return PayPalWebhookService(
        uow_factory=SQLAlchemyUnitOfWork,
        verifier=get_webhook_verifier(),
        cache=await get_redis_client(),
        settings=payment_settings,
    )


async def get_catalog_service() -> CatalogService:
    return CatalogService()
