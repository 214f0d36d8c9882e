"""
内容寻址 Embedding 缓存

键为内容 sha256：命中直接复用，未命中调用 provider 后以 insert-if-absent 写入。
并发写同一 hash 时只有一方落库，另一方回读胜出者，保证同内容始终对应同一向量。
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from .embedding import EmbeddingProvider
from .models import CachedEmbedding
from .utils import text_checksum

logger = logging.getLogger("knowledge.embedding_cache")


class EmbeddingCacheStore(Protocol):

    async def get_cached_embedding(self, content_hash: str) -> Optional[CachedEmbedding]: ...

    async def insert_embedding_if_absent(self, entry: CachedEmbedding) -> bool: ...

    async def attach_embedding(self, chunk_id: str, entry: CachedEmbedding, token_count: Optional[int]) -> None: ...


class EmbeddingCacheService:

    def __init__(self, store: EmbeddingCacheStore) -> None:
        self._store = store

    async def get_or_create(self, content: str, provider: EmbeddingProvider) -> CachedEmbedding:
        content_hash = text_checksum(content)
        existing = await self._store.get_cached_embedding(content_hash)
        if existing is not None:
            return existing.model_copy(update={"cached": True})

        result = await provider.embed(content)
        entry = CachedEmbedding(
            hash=content_hash,
            embedding=result.embedding,
            token_count=result.token_count,
            model=result.model,
            cached=False,
        )
        inserted = await self._store.insert_embedding_if_absent(entry)
        if not inserted:
            winner = await self._store.get_cached_embedding(content_hash)
            if winner is not None:
                logger.debug(f"[KB] embedding 缓存竞争，复用已写入向量: hash={content_hash[:12]}")
                return winner.model_copy(update={"cached": False})
        return entry

    async def attach_to_chunk(
        self,
        chunk_id: str,
        content: str,
        provider: EmbeddingProvider,
        token_fallback: Optional[int] = None,
    ) -> CachedEmbedding:
        entry = await self.get_or_create(content, provider)
        await self._store.attach_embedding(chunk_id, entry, entry.token_count or token_fallback)
        return entry
