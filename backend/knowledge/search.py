"""
混合检索 (Hybrid Search)

向量召回与关键词召回并发执行，结果合并后:
  1. 关键词分数乘以 keyword_boost (默认 0.35)，向量分数保持原值
  2. 按原始分数 dense rank (同分同名次，名次连续)
  3. 归一化 score = raw / max(raw)，max <= 0 时全部为 0
  4. 按原始分数降序 (同分保持召回顺序) 截断到 limit

同一切片可能同时出现在两路结果中，这里不去重；需要去重时使用 merge_hybrid_results。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Protocol

from config import SearchSettings

from .models import HybridSearchResult, SearchCandidate, SearchFilters

logger = logging.getLogger("knowledge.search")


class SearchBackend(Protocol):

    async def vector_matches(self, embedding: list[float], filters: SearchFilters, k: int) -> list[SearchCandidate]: ...

    async def keyword_matches(self, query: str, filters: SearchFilters, k: int) -> list[SearchCandidate]: ...


def fuse_candidates(
    vector_hits: Iterable[SearchCandidate],
    keyword_hits: Iterable[SearchCandidate],
    keyword_boost: float,
    limit: int,
) -> list[HybridSearchResult]:
    combined: list[tuple[SearchCandidate, float, str]] = []
    for c in vector_hits:
        combined.append((c, c.score, "vector"))
    for c in keyword_hits:
        combined.append((c, c.score * keyword_boost, "keyword"))
    if not combined:
        return []

    max_raw = max(raw for _, raw, _ in combined)
    distinct = sorted({raw for _, raw, _ in combined}, reverse=True)
    rank_of = {raw: i + 1 for i, raw in enumerate(distinct)}

    # sorted 是稳定排序，同分时向量结果在前
    ordered = sorted(combined, key=lambda item: item[1], reverse=True)
    results: list[HybridSearchResult] = []
    for c, raw, source in ordered[:limit]:
        results.append(HybridSearchResult(
            chunk_id=c.chunk_id,
            document_id=c.document_id,
            document_title=c.document_title,
            content=c.content,
            mime_type=c.mime_type,
            folder_ids=list(c.folder_ids),
            tags=list(c.tags),
            score=raw / max_raw if max_raw > 0 else 0.0,
            raw_score=raw,
            rank=rank_of[raw],
            source=source,
        ))
    return results


class HybridSearchEngine:

    def __init__(self, backend: SearchBackend, settings: Optional[SearchSettings] = None) -> None:
        self._backend = backend
        self.settings = settings or SearchSettings()

    async def search(
        self,
        query: str,
        embedding: list[float],
        filters: SearchFilters,
        vector_k: Optional[int] = None,
        keyword_k: Optional[int] = None,
        limit: Optional[int] = None,
        keyword_boost: Optional[float] = None,
    ) -> list[HybridSearchResult]:
        if not embedding:
            raise ValueError("混合检索需要查询向量 (embedding 不能为空)")
        if not filters.workspace:
            raise ValueError("混合检索必须指定 workspace")

        s = self.settings
        vector_hits, keyword_hits = await asyncio.gather(
            self._backend.vector_matches(embedding, filters, s.vector_k if vector_k is None else vector_k),
            self._backend.keyword_matches(query, filters, s.keyword_k if keyword_k is None else keyword_k),
        )
        results = fuse_candidates(
            vector_hits,
            keyword_hits,
            s.keyword_boost if keyword_boost is None else keyword_boost,
            s.limit if limit is None else limit,
        )
        logger.info(
            f"[KB] 混合检索: workspace={filters.workspace}, vector={len(vector_hits)}, "
            f"keyword={len(keyword_hits)}, returned={len(results)}"
        )
        return results


def merge_hybrid_results(
    results: Iterable[HybridSearchResult],
    max_contexts: int,
) -> list[HybridSearchResult]:
    """按 chunk_id 去重保留最高分 (同分先到者保留)，按分数降序截断"""
    best: dict[str, HybridSearchResult] = {}
    for r in results:
        current = best.get(r.chunk_id)
        if current is None or r.score > current.score:
            best[r.chunk_id] = r
    merged = sorted(best.values(), key=lambda r: r.score, reverse=True)
    return merged[:max_contexts]
