"""
混合检索单元测试
"""
from __future__ import annotations

import asyncio
import os
import sys

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from config import SearchSettings
from knowledge.chunking import chunk_text
from knowledge.memory_store import InMemoryKnowledgeStore, cosine_similarity
from knowledge.models import CachedEmbedding, HybridSearchResult, SearchCandidate, SearchFilters
from knowledge.search import HybridSearchEngine, fuse_candidates, merge_hybrid_results


def _candidate(chunk_id: str, score: float, document_id: str = "d1") -> SearchCandidate:
    return SearchCandidate(chunk_id=chunk_id, document_id=document_id, score=score)


# ---------------------------------------------------------------------------
# 融合打分
# ---------------------------------------------------------------------------

def test_fuse_boosts_keyword_scores_and_ranks() -> None:
    vector = [_candidate("v1", 0.9), _candidate("v2", 0.5)]
    keyword = [_candidate("k1", 2.0), _candidate("k2", 1.0)]
    results = fuse_candidates(vector, keyword, keyword_boost=0.25, limit=10)

    assert [r.chunk_id for r in results] == ["v1", "v2", "k1", "k2"]
    assert [r.raw_score for r in results] == [0.9, 0.5, 0.5, 0.25]
    # 同分同名次，名次连续；同分时向量结果在前
    assert [r.rank for r in results] == [1, 2, 2, 3]
    assert [r.source for r in results] == ["vector", "vector", "keyword", "keyword"]
    assert results[0].score == 1.0
    assert results[-1].score == pytest.approx(0.25 / 0.9)


def test_fuse_limit_and_empty() -> None:
    assert fuse_candidates([], [], keyword_boost=0.35, limit=5) == []
    results = fuse_candidates([_candidate(f"c{i}", i / 10) for i in range(10)], [], 0.35, limit=3)
    assert [r.chunk_id for r in results] == ["c9", "c8", "c7"]


def test_fuse_non_positive_max_normalizes_to_zero() -> None:
    results = fuse_candidates([_candidate("a", 0.0), _candidate("b", -0.2)], [], 0.35, limit=10)
    assert [r.score for r in results] == [0.0, 0.0]
    assert [r.rank for r in results] == [1, 2]


def test_merge_keeps_best_score_per_chunk() -> None:
    def result(chunk_id: str, score: float) -> HybridSearchResult:
        return HybridSearchResult(chunk_id=chunk_id, document_id="d", score=score, rank=1, source="vector")

    merged = merge_hybrid_results(
        [result("a", 0.4), result("b", 0.9), result("a", 0.7), result("c", 0.1)],
        max_contexts=2,
    )
    assert [(r.chunk_id, r.score) for r in merged] == [("b", 0.9), ("a", 0.7)]


def test_merge_ties_keep_first_arrival() -> None:
    first = HybridSearchResult(chunk_id="a", document_id="d1", score=0.5, rank=1, source="vector")
    second = HybridSearchResult(chunk_id="a", document_id="d1", score=0.5, rank=1, source="keyword")
    other = HybridSearchResult(chunk_id="b", document_id="d2", score=0.5, rank=1, source="keyword")

    merged = merge_hybrid_results([first, other, second], max_contexts=5)
    assert [r.chunk_id for r in merged] == ["a", "b"]
    assert merged[0].source == "vector"


# ---------------------------------------------------------------------------
# 检索引擎 + 内存存储
# ---------------------------------------------------------------------------

async def _seed(store: InMemoryKnowledgeStore, workspace: str, title: str, text: str,
                embedding: list[float], mime_type: str = "text/plain") -> str:
    doc = await store.create_file_and_document(
        workspace=workspace, bucket=f"kb-{workspace}", object_key=f"{workspace}/{title}",
        size=len(text), checksum=title, title=title, mime_type=mime_type,
    )
    chunks = chunk_text(text, source=title)
    await store.complete_ingestion(doc["id"], doc["file_id"], chunks)
    entry = CachedEmbedding(hash=chunks[0].content_hash, embedding=embedding, token_count=1, model="fake")
    await store.attach_embedding(chunks[0].id, entry, None)
    return doc["id"]


def test_engine_requires_embedding_and_workspace() -> None:
    async def run():
        engine = HybridSearchEngine(InMemoryKnowledgeStore())
        with pytest.raises(ValueError):
            await engine.search("q", [], SearchFilters(workspace="ws"))
        filters = SearchFilters.model_construct(workspace="", folder_ids=None, tag_labels=None, mime_types=None)
        with pytest.raises(ValueError):
            await engine.search("q", [1.0], filters)

    asyncio.run(run())


def test_engine_scopes_results_to_workspace_and_filters() -> None:
    async def run():
        store = InMemoryKnowledgeStore()
        refund = await _seed(store, "ws", "refund.txt", "refund policy for annual plans", [1.0, 0.0])
        travel = await _seed(store, "ws", "travel.md", "travel policy and expenses", [0.0, 1.0], "text/markdown")
        await _seed(store, "other", "leak.txt", "refund policy secret", [1.0, 0.0])
        store.assign_folder(refund, "finance")
        store.add_tag(travel, "hr")

        engine = HybridSearchEngine(store, SearchSettings(keyword_boost=0.5))
        results = await engine.search("refund policy", [1.0, 0.0], SearchFilters(workspace="ws"))
        assert {r.document_id for r in results} == {refund, travel}
        assert results[0].document_id == refund
        assert results[0].source == "vector"
        assert results[0].score == 1.0
        keyword_hits = [r for r in results if r.source == "keyword"]
        assert [r.document_id for r in keyword_hits] == [refund]
        assert keyword_hits[0].raw_score == pytest.approx(0.5 * 2 / 5)

        by_folder = await engine.search("policy", [1.0, 0.0], SearchFilters(workspace="ws", folder_ids=["finance"]))
        assert {r.document_id for r in by_folder} == {refund}
        by_tag = await engine.search("policy", [1.0, 0.0], SearchFilters(workspace="ws", tag_labels=["hr"]))
        assert {r.document_id for r in by_tag} == {travel}
        by_mime = await engine.search("policy", [1.0, 0.0], SearchFilters(workspace="ws", mime_types=["text/markdown"]))
        assert {r.document_id for r in by_mime} == {travel}

    asyncio.run(run())


def test_engine_honours_explicit_zero_limits() -> None:
    async def run():
        store = InMemoryKnowledgeStore()
        await _seed(store, "ws", "refund.txt", "refund policy for annual plans", [1.0, 0.0])
        engine = HybridSearchEngine(store)

        assert await engine.search("refund", [1.0, 0.0], SearchFilters(workspace="ws"), limit=0) == []
        keyword_only = await engine.search("refund", [1.0, 0.0], SearchFilters(workspace="ws"), vector_k=0)
        assert {r.source for r in keyword_only} == {"keyword"}
        vector_only = await engine.search("refund", [1.0, 0.0], SearchFilters(workspace="ws"), keyword_k=0)
        assert {r.source for r in vector_only} == {"vector"}

    asyncio.run(run())


def test_chunks_without_embedding_are_keyword_only() -> None:
    async def run():
        store = InMemoryKnowledgeStore()
        doc = await store.create_file_and_document(
            workspace="ws", bucket="kb-ws", object_key="ws/a.txt", size=5, checksum="x", title="a.txt",
        )
        await store.complete_ingestion(doc["id"], doc["file_id"], chunk_text("quarterly revenue report"))
        assert await store.vector_matches([1.0, 0.0], SearchFilters(workspace="ws"), 10) == []
        hits = await store.keyword_matches("revenue", SearchFilters(workspace="ws"), 10)
        assert len(hits) == 1
        assert await store.keyword_matches("revenue forecast", SearchFilters(workspace="ws"), 10) == []

    asyncio.run(run())


def test_cosine_similarity() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
