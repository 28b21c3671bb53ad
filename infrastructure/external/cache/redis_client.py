"""
Redis客户端封装 - 命名空间隔离、JSON序列化、原子操作

与通用缓存不同，这里的错误不会被吞掉：幂等存储需要区分
"键不存在" 与 "Redis不可用"，因此 RedisError 原样抛出由调用方处理。
"""
from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, Callable, Optional

from redis import asyncio as aioredis

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


# KEYS[1] = key, ARGV[1] = expected value; delete only when it still matches
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisClient:
    """
    Redis客户端

    特性:
    - 命名空间隔离
    - 自动序列化
    - SET NX EX 与比较删除（Lua）原子操作
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        serializer: Optional[Callable] = None,
    ):
        self._client = client
        self._namespace = namespace.strip(":")
        self._serializer = serializer or self._default_serializer

    def _format_key(self, key: str) -> str:
        """格式化键名，添加命名空间前缀"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    @staticmethod
    def _default_serializer(value: Any) -> str:
        """默认序列化方法"""
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str, ensure_ascii=False)

    async def get_raw(self, key: str) -> Optional[str]:
        return await self._client.get(self._format_key(key))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """设置值；nx=True 时仅当键不存在才写入，返回是否写入"""
        result = await self._client.set(
            self._format_key(key),
            self._serializer(value),
            ex=ttl if ttl and ttl > 0 else None,
            nx=nx,
        )
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """仅当键的当前值等于 expected 时删除"""
        result = await self._client.eval(_COMPARE_AND_DELETE, 1, self._format_key(key), expected)
        return bool(result)

    async def close(self) -> None:
        await self._client.aclose()


# ============= 全局实例管理 =============

_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """
    初始化Redis客户端

    Args:
        namespace: 命名空间
        **kwargs: 其他Redis连接参数
    """
    global _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL is not configured")

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

        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_client_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _cache_instance

    if _cache_instance is not None:
        try:
            await _cache_instance.close()
            logger.info("redis_client_closed")
        finally:
            _cache_instance = None
