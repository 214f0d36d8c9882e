"""
kb_chunks / kb_embedding_cache 表访问 (asyncpg + pgvector)

- 两路召回: 向量余弦相似度 (1 - (embedding <=> q)) 与全文检索 ts_rank_cd，
  共享同一个按工作区 / 文件夹 / 标签 / MIME 过滤的 doc_meta CTE
- Embedding 缓存: 按内容 hash 查询、ON CONFLICT (hash) DO NOTHING 写入、回填到切片
"""
from __future__ import annotations

import uuid
from typing import Any, Optional

import asyncpg

from infra.postgres.service import connect, parse_vector, vector_literal

from .models import CachedEmbedding, SearchCandidate, SearchFilters

# $1 workspace, $2 folder_ids, $3 tag_labels, $4 mime_types
_DOC_META_CTE = """
    WITH doc_meta AS (
        SELECT
            d.id        AS document_id,
            d.title     AS document_title,
            d.workspace AS workspace,
            f.mime_type AS mime_type,
            COALESCE(array_agg(DISTINCT df.folder_id) FILTER (WHERE df.folder_id IS NOT NULL), ARRAY[]::text[]) AS folder_ids,
            COALESCE(array_agg(DISTINCT t.label) FILTER (WHERE t.label IS NOT NULL), ARRAY[]::text[])      AS tags
        FROM kb_documents d
        LEFT JOIN kb_files f ON f.id = d.file_id
        LEFT JOIN kb_document_folders df ON df.document_id = d.id
        LEFT JOIN kb_document_tags dt ON dt.document_id = d.id
        LEFT JOIN kb_tags t ON t.id = dt.tag_id
        WHERE d.workspace = $1
        GROUP BY d.id, d.title, d.workspace, f.mime_type
    )
"""

_FILTERS = """
    AND ($2::text[] IS NULL OR dm.folder_ids && $2::text[])
    AND ($3::text[] IS NULL OR dm.tags && $3::text[])
    AND ($4::text[] IS NULL OR dm.mime_type = ANY($4::text[]))
"""

_CANDIDATE_COLUMNS = """
    c.id AS chunk_id,
    c.document_id,
    dm.document_title,
    c.content,
    dm.mime_type,
    dm.folder_ids,
    dm.tags
"""


def _filter_args(filters: SearchFilters) -> tuple[Any, ...]:
    # 空列表等同于不过滤
    return (
        filters.workspace,
        filters.folder_ids or None,
        filters.tag_labels or None,
        filters.mime_types or None,
    )


def _row_to_candidate(row: asyncpg.Record) -> SearchCandidate:
    d = dict(row)
    d["folder_ids"] = list(d.get("folder_ids") or [])
    d["tags"] = list(d.get("tags") or [])
    d["score"] = float(d["score"] or 0.0)
    return SearchCandidate(**d)


class ChunkRepository:

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn

    async def _conn(self) -> asyncpg.Connection:
        return await connect(self._dsn)

    # ------------------------------------------------------------------
    # 向量召回 (未向量化的切片不参与)
    # ------------------------------------------------------------------
    async def vector_matches(
        self,
        embedding: list[float],
        filters: SearchFilters,
        k: int,
    ) -> list[SearchCandidate]:
        conn = await self._conn()
        try:
            rows = await conn.fetch(
                f"""
                {_DOC_META_CTE}
                SELECT {_CANDIDATE_COLUMNS},
                       (1 - (c.embedding <=> $5::vector)) AS score
                FROM kb_chunks c
                JOIN doc_meta dm ON dm.document_id = c.document_id
                WHERE c.embedding IS NOT NULL
                {_FILTERS}
                ORDER BY score DESC
                LIMIT $6
                """,
                *_filter_args(filters), vector_literal(embedding), k,
            )
            return [_row_to_candidate(r) for r in rows]
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 关键词召回 (plainto_tsquery, english 配置)
    # ------------------------------------------------------------------
    async def keyword_matches(
        self,
        query: str,
        filters: SearchFilters,
        k: int,
    ) -> list[SearchCandidate]:
        conn = await self._conn()
        try:
            rows = await conn.fetch(
                f"""
                {_DOC_META_CTE}
                SELECT {_CANDIDATE_COLUMNS},
                       ts_rank_cd(c.search_vector, plainto_tsquery('english', $5)) AS score
                FROM kb_chunks c
                JOIN doc_meta dm ON dm.document_id = c.document_id
                WHERE c.search_vector @@ plainto_tsquery('english', $5)
                {_FILTERS}
                ORDER BY score DESC
                LIMIT $6
                """,
                *_filter_args(filters), query, k,
            )
            return [_row_to_candidate(r) for r in rows]
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Embedding 缓存
    # ------------------------------------------------------------------
    async def get_cached_embedding(self, content_hash: str) -> Optional[CachedEmbedding]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                """
                SELECT hash, model, token_count, embedding::text AS embedding
                FROM kb_embedding_cache WHERE hash = $1
                """,
                content_hash,
            )
            if row is None:
                return None
            return CachedEmbedding(
                hash=row["hash"],
                embedding=parse_vector(row["embedding"]),
                token_count=row["token_count"],
                model=row["model"],
                cached=True,
            )
        finally:
            await conn.close()

    async def insert_embedding_if_absent(self, entry: CachedEmbedding) -> bool:
        conn = await self._conn()
        try:
            result = await conn.execute(
                """
                INSERT INTO kb_embedding_cache (id, hash, model, token_count, dimensions, embedding)
                VALUES ($1, $2, $3, $4, $5, $6::vector)
                ON CONFLICT (hash) DO NOTHING
                """,
                str(uuid.uuid4()), entry.hash, entry.model, entry.token_count,
                len(entry.embedding), vector_literal(entry.embedding),
            )
            return result.endswith("1")
        finally:
            await conn.close()

    async def attach_embedding(
        self,
        chunk_id: str,
        entry: CachedEmbedding,
        token_count: Optional[int],
    ) -> None:
        conn = await self._conn()
        try:
            await conn.execute(
                """
                UPDATE kb_chunks
                SET embedding = $2::vector, token_count = COALESCE($3, token_count), content_hash = $4
                WHERE id = $1
                """,
                chunk_id, vector_literal(entry.embedding), token_count, entry.hash,
            )
        finally:
            await conn.close()
