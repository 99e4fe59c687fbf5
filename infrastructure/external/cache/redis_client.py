"""
Redis客户端 - 命名空间隔离的键值操作

支付服务只用它记录 Webhook 投递指纹（SET NX + TTL），未配置 Redis 时功能自动关闭。
"""
from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Redis客户端封装

    特性:
    - 命名空间隔离
    - 值自动序列化
    - 去重标记在 Redis 故障时放行
    """

    def __init__(self, client: aioredis.Redis, namespace: str = ""):
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        """格式化键名，添加命名空间前缀"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    @staticmethod
    def _serialize(value: Any) -> str:
        if isinstance(value, (str, int, float)):
            return str(value)
        return json.dumps(value, default=str, ensure_ascii=False)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """设置值；nx=True 时仅在键不存在时写入，返回是否写入成功"""
        formatted_key = self._format_key(key)
        result = await self._client.set(
            formatted_key,
            self._serialize(value),
            ex=ttl if ttl and ttl > 0 else None,
            nx=nx,
        )
        return bool(result)

    async def remember_once(self, key: str, ttl: int) -> bool:
        """
        首次见到该键时返回 True，TTL 内重复出现返回 False

        Redis 不可用时返回 True（宁可重复处理也不丢事件，处理本身是幂等的）。
        """
        try:
            return await self.set(key, "1", ttl=ttl, nx=True)
        except RedisError as e:
            logger.warning("redis_dedupe_unavailable", key=self._format_key(key), error=str(e))
            return True

    async def delete(self, *keys: str) -> int:
        formatted_keys = [self._format_key(k) for k in keys]
        try:
            return await self._client.delete(*formatted_keys)
        except RedisError as e:
            logger.error("redis_delete_failed", keys=formatted_keys, error=str(e))
            return 0

    async def health_check(self) -> bool:
        try:
            return await self._client.ping()
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """初始化全局Redis客户端（未配置 redis.url 时抛出 RuntimeError）"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("redis.url 未配置，无法初始化Redis客户端")

        # 构建跨平台 keepalive 选项（若可用）
        keepalive_opts = {}
        if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
            keepalive_opts = {
                socket.TCP_KEEPIDLE: 1,
                socket.TCP_KEEPINTVL: 1,
                socket.TCP_KEEPCNT: 3,
            }

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
            socket_keepalive=True,
            socket_keepalive_options=keepalive_opts,
            **kwargs
        )
        await client.ping()

        _redis_client = client
        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_client_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


async def get_redis_client() -> Optional[RedisClient]:
    """获取全局Redis客户端实例；未初始化时返回 None"""
    return _cache_instance


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_client_closed")
        finally:
            _redis_client = None
            _cache_instance = None


__all__ = [
    "RedisClient",
    "init_redis_client",
    "get_redis_client",
    "shutdown_redis_client",
]
