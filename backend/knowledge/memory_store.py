"""
进程内知识库存储

同时实现 DocumentStore / SearchBackend / EmbeddingCacheStore 三个接口，供测试与本地调试使用。
检索打分是 SQL 版本的近似：
  - 向量: 余弦相似度 (未向量化的切片跳过)
  - 关键词: 查询词全部命中才算匹配 (对应 plainto_tsquery 的 AND 语义)，分数为命中次数 / 切片词数
"""
from __future__ import annotations

import asyncio
import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from .chunking import ChunkRecord
from .errors import NotFound
from .models import (
    CachedEmbedding,
    DocumentStatus,
    FileStatus,
    ObjectLocator,
    SearchCandidate,
    SearchFilters,
    utcnow,
)

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _tokens(text: str) -> list[str]:
    return [t.lower() for t in _WORD_RE.findall(text)]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


@dataclass
class _StoredChunk:
    record: ChunkRecord
    embedding: Optional[list[float]] = None
    token_count: Optional[int] = None


@dataclass
class _Document:
    id: str
    workspace: str
    file_id: Optional[str]
    title: str
    status: DocumentStatus = DocumentStatus.PENDING
    token_count: int = 0
    error_log: Optional[str] = None
    folder_ids: set[str] = field(default_factory=set)
    tags: set[str] = field(default_factory=set)


class InMemoryKnowledgeStore:

    def __init__(self) -> None:
        self.files: dict[str, dict[str, Any]] = {}
        self.documents: dict[str, _Document] = {}
        self.chunks: dict[str, _StoredChunk] = {}
        self.embedding_cache: dict[str, CachedEmbedding] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # 测试辅助
    # ------------------------------------------------------------------
    def assign_folder(self, document_id: str, folder_id: str) -> None:
        self.documents[document_id].folder_ids.add(folder_id)

    def add_tag(self, document_id: str, label: str) -> None:
        self.documents[document_id].tags.add(label)

    def chunks_for(self, document_id: str) -> list[ChunkRecord]:
        records = [c.record for c in self.chunks.values() if c.record.document_id == document_id]
        return sorted(records, key=lambda r: r.index)

    def embedding_of(self, chunk_id: str) -> Optional[list[float]]:
        return self.chunks[chunk_id].embedding

    def _document_dict(self, doc: _Document) -> dict[str, Any]:
        f = self.files.get(doc.file_id or "", {})
        return {
            "id": doc.id,
            "workspace": doc.workspace,
            "file_id": doc.file_id,
            "title": doc.title,
            "status": doc.status.value,
            "token_count": doc.token_count,
            "error_log": doc.error_log,
            "bucket": f.get("bucket"),
            "object_key": f.get("object_key"),
            "mime_type": f.get("mime_type"),
            "size": f.get("size"),
            "checksum": f.get("checksum"),
        }

    # ------------------------------------------------------------------
    # DocumentStore
    # ------------------------------------------------------------------
    async def find_file_by_checksum(self, workspace: str, checksum: str) -> dict[str, Any]:
        for f in self.files.values():
            if f["workspace"] == workspace and f["checksum"] == checksum:
                return dict(f)
        return {}

    async def create_file_and_document(
        self,
        *,
        workspace: str,
        bucket: str,
        object_key: str,
        size: int,
        checksum: str,
        title: str,
        mime_type: Optional[str] = None,
        uploader_id: Optional[str] = None,
    ) -> dict[str, Any]:
        async with self._lock:
            file_id = str(uuid.uuid4())
            self.files[file_id] = {
                "id": file_id,
                "workspace": workspace,
                "uploader_id": uploader_id,
                "bucket": bucket,
                "object_key": object_key,
                "size": size,
                "mime_type": mime_type,
                "checksum": checksum,
                "status": FileStatus.PENDING.value,
                "created_at": utcnow(),
            }
            doc = _Document(id=str(uuid.uuid4()), workspace=workspace, file_id=file_id, title=title)
            self.documents[doc.id] = doc
            return self._document_dict(doc)

    async def find_document_by_object_key(self, workspace: str, object_key: str) -> dict[str, Any]:
        for doc in self.documents.values():
            f = self.files.get(doc.file_id or "")
            if doc.workspace == workspace and f and f["object_key"] == object_key:
                return self._document_dict(doc)
        return {}

    async def get_document(self, workspace: str, document_id: str) -> dict[str, Any]:
        doc = self.documents.get(document_id)
        if doc is None or doc.workspace != workspace:
            return {}
        return self._document_dict(doc)

    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_log: Optional[str] = None,
    ) -> None:
        doc = self.documents.get(document_id)
        if doc is not None:
            doc.status = status
            doc.error_log = error_log

    async def complete_ingestion(self, document_id: str, file_id: str, chunks: list[ChunkRecord]) -> int:
        async with self._lock:
            doc = self.documents[document_id]
            self.files[file_id]["status"] = FileStatus.READY.value
            for c in chunks:
                c.document_id = document_id
                self.chunks[c.id] = _StoredChunk(record=c, token_count=c.token_estimate)
            doc.status = DocumentStatus.READY
            doc.token_count = sum(c.token_estimate for c in chunks)
            doc.error_log = None
            return len(chunks)

    async def delete_document(
        self,
        workspace: str,
        document_id: str,
        delete_file: bool = False,
    ) -> Optional[ObjectLocator]:
        async with self._lock:
            doc = self.documents.get(document_id)
            if doc is None or doc.workspace != workspace:
                raise NotFound(f"文档不存在: {document_id}", workspace=workspace, document_id=document_id)
            for chunk_id in [cid for cid, c in self.chunks.items() if c.record.document_id == document_id]:
                del self.chunks[chunk_id]
            del self.documents[document_id]
            if delete_file and doc.file_id and doc.file_id in self.files:
                f = self.files.pop(doc.file_id)
                return ObjectLocator(workspace=workspace, bucket=f["bucket"], object_key=f["object_key"])
            return None

    # ------------------------------------------------------------------
    # SearchBackend
    # ------------------------------------------------------------------
    def _filtered(self, filters: SearchFilters):
        for stored in self.chunks.values():
            doc = self.documents.get(stored.record.document_id)
            if doc is None or doc.workspace != filters.workspace:
                continue
            if filters.folder_ids and not doc.folder_ids.intersection(filters.folder_ids):
                continue
            if filters.tag_labels and not doc.tags.intersection(filters.tag_labels):
                continue
            mime_type = self.files.get(doc.file_id or "", {}).get("mime_type")
            if filters.mime_types and mime_type not in filters.mime_types:
                continue
            yield stored, doc, mime_type

    @staticmethod
    def _candidate(stored: _StoredChunk, doc: _Document, mime_type: Optional[str], score: float) -> SearchCandidate:
        return SearchCandidate(
            chunk_id=stored.record.id,
            document_id=doc.id,
            document_title=doc.title,
            content=stored.record.content,
            mime_type=mime_type,
            folder_ids=sorted(doc.folder_ids),
            tags=sorted(doc.tags),
            score=score,
        )

    async def vector_matches(self, embedding: list[float], filters: SearchFilters, k: int) -> list[SearchCandidate]:
        hits = [
            self._candidate(stored, doc, mime, cosine_similarity(embedding, stored.embedding))
            for stored, doc, mime in self._filtered(filters)
            if stored.embedding
        ]
        hits.sort(key=lambda c: c.score, reverse=True)
        return hits[:k]

    async def keyword_matches(self, query: str, filters: SearchFilters, k: int) -> list[SearchCandidate]:
        terms = set(_tokens(query))
        if not terms:
            return []
        hits: list[SearchCandidate] = []
        for stored, doc, mime in self._filtered(filters):
            words = _tokens(stored.record.content)
            if not terms.issubset(words):
                continue
            matched = sum(1 for w in words if w in terms)
            hits.append(self._candidate(stored, doc, mime, matched / len(words)))
        hits.sort(key=lambda c: c.score, reverse=True)
        return hits[:k]

    # ------------------------------------------------------------------
    # EmbeddingCacheStore
    # ------------------------------------------------------------------
    async def get_cached_embedding(self, content_hash: str) -> Optional[CachedEmbedding]:
        return self.embedding_cache.get(content_hash)

    async def insert_embedding_if_absent(self, entry: CachedEmbedding) -> bool:
        async with self._lock:
            if entry.hash in self.embedding_cache:
                return False
            self.embedding_cache[entry.hash] = entry.model_copy(update={"cached": True})
            return True

    async def attach_embedding(self, chunk_id: str, entry: CachedEmbedding, token_count: Optional[int]) -> None:
        stored = self.chunks.get(chunk_id)
        if stored is None:
            raise NotFound(f"切片不存在: {chunk_id}", chunk_id=chunk_id)
        stored.embedding = list(entry.embedding)
        if token_count is not None:
            stored.token_count = token_count
        stored.record.content_hash = entry.hash
