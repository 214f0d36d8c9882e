"""
知识库 Pydantic 数据模型

包含上传会话、文档状态、检索请求/结果以及后台任务载荷。
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# 枚举
# ---------------------------------------------------------------------------

class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.ABORTED, UploadStatus.FAILED)


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    EMBEDDING = "EMBEDDING"
    READY = "READY"
    FAILED = "FAILED"


class FileStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# 对象存储定位
# ---------------------------------------------------------------------------

class ObjectLocator(BaseModel):
    workspace: str
    bucket: str
    object_key: str


class UploadResult(ObjectLocator):
    checksum: str
    size: int
    mime_type: Optional[str] = None


class UploadContext(BaseModel):
    """上传 / 入库时调用方提供的上下文"""
    workspace_slug: str
    filename: str
    size: int = 0
    mime_type: Optional[str] = None
    uploader_id: Optional[str] = None


# ---------------------------------------------------------------------------
# 断点续传会话
# ---------------------------------------------------------------------------

class UploadPart(BaseModel):
    """单个分片记录，写入后不可变；同一 part_number 重传时整体替换"""
    model_config = ConfigDict(frozen=True)

    part_number: int = Field(..., ge=1)
    size: int
    etag: str
    checksum: str


class UploadSession(ObjectLocator):
    id: str
    upload_id: str
    mime_type: Optional[str] = None
    part_size: int
    checksum: Optional[str] = None
    status: UploadStatus = UploadStatus.PENDING
    parts: list[UploadPart] = Field(default_factory=list)
    size: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def locator(self) -> ObjectLocator:
        return ObjectLocator(workspace=self.workspace, bucket=self.bucket, object_key=self.object_key)

    def part(self, part_number: int) -> Optional[UploadPart]:
        for p in self.parts:
            if p.part_number == part_number:
                return p
        return None

    def with_part(self, part: UploadPart) -> "UploadSession":
        """返回替换/追加分片后的新会话，size 始终等于分片大小之和"""
        parts = [p for p in self.parts if p.part_number != part.part_number] + [part]
        return self.model_copy(update={
            "parts": parts,
            "size": sum(p.size for p in parts),
            "status": UploadStatus.UPLOADING,
            "updated_at": utcnow(),
        })


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

class EmbeddingResult(BaseModel):
    embedding: list[float]
    token_count: int
    model: str


class CachedEmbedding(BaseModel):
    hash: str
    embedding: list[float]
    token_count: int
    model: str
    cached: bool = False


# ---------------------------------------------------------------------------
# 检索
# ---------------------------------------------------------------------------

class SearchFilters(BaseModel):
    """两路召回共用的过滤条件，workspace 必填"""
    workspace: str = Field(..., min_length=1)
    folder_ids: Optional[list[str]] = None
    tag_labels: Optional[list[str]] = None
    mime_types: Optional[list[str]] = None


class SearchCandidate(BaseModel):
    """单路召回命中 (vector 为余弦相似度, keyword 为 ts_rank 原始分)"""
    chunk_id: str
    document_id: str
    document_title: str = ""
    content: str = ""
    mime_type: Optional[str] = None
    folder_ids: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    score: float


class HybridSearchResult(BaseModel):
    chunk_id: str
    document_id: str
    document_title: str = ""
    content: str = ""
    mime_type: Optional[str] = None
    folder_ids: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    score: float = Field(description="归一化分数 raw / max(raw)")
    raw_score: float = 0.0
    rank: int = Field(description="按 raw_score 的 dense rank，从 1 开始")
    source: Literal["vector", "keyword"]


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    embedding: Optional[list[float]] = Field(None, description="查询向量，不传则由服务端计算")
    filters: SearchFilters
    vector_k: Optional[int] = Field(None, ge=1, le=200)
    keyword_k: Optional[int] = Field(None, ge=1, le=200)
    limit: Optional[int] = Field(None, ge=1, le=100)


# ---------------------------------------------------------------------------
# 后台任务载荷
# ---------------------------------------------------------------------------

class IngestionJob(BaseModel):
    workspace_slug: str
    object_key: str
    bucket: str
    filename: str
    size: int
    mime_type: Optional[str] = None
    uploader_id: Optional[str] = None


class DeletionJob(BaseModel):
    workspace_slug: str
    document_id: str
    bucket: Optional[str] = None
    delete_file: bool = False
    reason: Optional[str] = None


class IngestionResult(BaseModel):
    document_id: str
    chunks_created: int = 0
    embedded: int = 0
    skipped: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
