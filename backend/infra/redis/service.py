"""
Redis 服务封装

RedisRateLimiter: 多进程共享的固定窗口限流 (INCR + 首次命中时 PEXPIRE)，
观察语义与 knowledge.policy.InMemoryRateLimiter 一致：窗口内最多放行 limit 次。
"""
from typing import Optional

import redis.asyncio as aioredis

from config import load_settings


def _get_url() -> str:
    return load_settings().redis.url


def get_client(url: Optional[str] = None) -> aioredis.Redis:
    """获取异步 Redis 客户端（调用方负责 aclose）。"""
    return aioredis.from_url(url or _get_url(), encoding="utf-8", decode_responses=True)


async def ping(url: Optional[str] = None) -> bool:
    """检查 Redis 是否可用。"""
    client = get_client(url)
    try:
        return await client.ping()
    finally:
        await client.aclose()


class RedisRateLimiter:

    def __init__(self, client: aioredis.Redis, prefix: str = "kb:ratelimit") -> None:
        self._client = client
        self._prefix = prefix

    async def hit(self, key: str, limit: int, window_seconds: float) -> bool:
        full_key = f"{self._prefix}:{key}"
        count = await self._client.incr(full_key)
        # 首次命中设置过期；INCR 后进程崩溃留下的无 TTL key 也在这里补上
        if count == 1 or await self._client.pttl(full_key) == -1:
            await self._client.pexpire(full_key, max(1, int(window_seconds * 1000)))
        return count <= limit

    async def aclose(self) -> None:
        await self._client.aclose()
