"""
PostgreSQL 服务封装（asyncpg）

仓储层每次调用新建连接、用完即关，连接参数统一由 config.PostgresSettings 提供。
"""
from typing import Optional

import asyncpg

from config import load_settings


def _get_dsn() -> str:
    return load_settings().postgres.dsn


async def connect(dsn: Optional[str] = None) -> asyncpg.Connection:
    """新建连接（调用方负责 close）。"""
    return await asyncpg.connect(dsn or _get_dsn())


async def ping(dsn: Optional[str] = None) -> bool:
    """检查数据库是否可用。"""
    conn = await connect(dsn)
    try:
        return await conn.fetchval("SELECT 1") == 1
    finally:
        await conn.close()


def vector_literal(embedding: list[float]) -> str:
    """pgvector 文本字面量 '[0.1,0.2,...]'，配合 $n::vector 使用"""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def parse_vector(raw) -> list[float]:
    """pgvector 列未注册 codec 时以文本返回，解析回 list[float]"""
    if raw is None:
        return []
    if isinstance(raw, str):
        body = raw.strip().strip("[]")
        return [float(x) for x in body.split(",") if x.strip()]
    return [float(x) for x in raw]
