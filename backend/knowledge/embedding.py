"""
Embedding 提供方

EmbeddingProvider 只要求 model 属性与 embed(text)；
生产实现走 OpenAI 兼容接口 (AsyncOpenAI)，可通过 base_url 指向任意兼容服务。
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from openai import AsyncOpenAI

from config import EmbeddingSettings

from .chunking import estimate_tokens
from .errors import ConfigurationError
from .models import EmbeddingResult

logger = logging.getLogger("knowledge.embedding")


class EmbeddingProvider(Protocol):
    model: str

    async def embed(self, text: str) -> EmbeddingResult: ...


class OpenAIEmbeddingProvider:

    def __init__(self, settings: EmbeddingSettings, client: Optional[AsyncOpenAI] = None) -> None:
        if client is None and not settings.enabled:
            raise ConfigurationError("未配置 KB_EMBEDDING_API_KEY / OPENAI_API_KEY")
        self.model = settings.model
        self._dimensions = settings.dimensions
        self._client = client or AsyncOpenAI(api_key=settings.api_key, base_url=settings.base_url)

    async def embed(self, text: str) -> EmbeddingResult:
        kwargs: dict[str, Any] = {"model": self.model, "input": [text]}
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions
        resp = await self._client.embeddings.create(**kwargs)
        usage = getattr(resp, "usage", None)
        token_count = getattr(usage, "prompt_tokens", None) or estimate_tokens(text)
        return EmbeddingResult(
            embedding=list(resp.data[0].embedding),
            token_count=token_count,
            model=getattr(resp, "model", None) or self.model,
        )
