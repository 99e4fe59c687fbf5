"""
令牌服务 - 校验调用方的访问令牌

令牌由认证服务签发（HS256，共享 SECRET_KEY），这里只负责解析出用户ID。
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

import jwt

from core.config import settings
from core.exceptions import TokenExpiredException, UnauthorizedException
from domain.user.entity import User


class TokenService:
    def create_access_token(self, user: User, *, expires_in: Optional[timedelta] = None) -> str:
        """签发访问令牌（运维脚本与测试使用）"""
        expire = datetime.now(timezone.utc) + (
            expires_in if expires_in is not None else timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        to_encode = {
            "sub": str(user.id),
            "username": user.username,
            "is_superuser": user.is_superuser,
            "exp": expire,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    def verify_access_token(self, token: str) -> int:
        """Verify an access JWT and return the user id.

        - Expired token: raise TokenExpiredException
        - Invalid token, wrong type or missing subject: raise UnauthorizedException
        """
        try:
            payload = jwt.decode(
                token,
                settings.SECRET_KEY,
                algorithms=[settings.ALGORITHM],
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredException()
        except jwt.InvalidTokenError:
            raise UnauthorizedException("Invalid authentication credentials")

        if payload.get("type", "access") != "access":
            raise UnauthorizedException("Invalid token type")
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise UnauthorizedException("Token has no valid subject")
