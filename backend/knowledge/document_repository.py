"""
kb_files / kb_documents 表 CRUD (asyncpg)

文件与文档的全生命周期：上传登记、按校验和查重、状态流转、
入库事务 (文件 READY + 切片批量写入 + 文档 READY) 与删除事务。
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Optional, Protocol

import asyncpg

from infra.postgres.service import connect

from .chunking import ChunkRecord
from .errors import NotFound
from .models import DocumentStatus, FileStatus, ObjectLocator


class DocumentStore(Protocol):

    async def find_file_by_checksum(self, workspace: str, checksum: str) -> dict[str, Any]: ...

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
    ) -> dict[str, Any]: ...

    async def find_document_by_object_key(self, workspace: str, object_key: str) -> dict[str, Any]: ...

    async def get_document(self, workspace: str, document_id: str) -> dict[str, Any]: ...

    async def update_status(self, document_id: str, status: DocumentStatus, error_log: Optional[str] = None) -> None: ...

    async def complete_ingestion(self, document_id: str, file_id: str, chunks: list[ChunkRecord]) -> int: ...

    async def delete_document(
        self, workspace: str, document_id: str, delete_file: bool = False,
    ) -> Optional[ObjectLocator]: ...


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    return dict(row)


_FILE_COLUMNS = """
    id, workspace, uploader_id, bucket, object_key,
    size, mime_type, checksum, status, created_at, updated_at
"""

# 文档查询时顺带带出源文件定位信息
_DOCUMENT_COLUMNS = """
    d.id, d.workspace, d.file_id, d.title, d.status, d.token_count, d.error_log,
    d.created_at, d.updated_at,
    f.bucket, f.object_key, f.mime_type, f.size, f.checksum
"""


class DocumentRepository:

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn

    async def _conn(self) -> asyncpg.Connection:
        return await connect(self._dsn)

    # ------------------------------------------------------------------
    # 查重 (同工作区同校验和)
    # ------------------------------------------------------------------
    async def find_file_by_checksum(self, workspace: str, checksum: str) -> dict[str, Any]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"SELECT {_FILE_COLUMNS} FROM kb_files WHERE workspace = $1 AND checksum = $2 LIMIT 1",
                workspace, checksum,
            )
            return _row_to_dict(row)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 上传登记：文件 + 文档 (均为 PENDING)
    # ------------------------------------------------------------------
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
        file_id = str(uuid.uuid4())
        document_id = str(uuid.uuid4())
        conn = await self._conn()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO kb_files (
                        id, workspace, uploader_id, bucket, object_key,
                        size, mime_type, checksum, status
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    file_id, workspace, uploader_id, bucket, object_key,
                    size, mime_type, checksum, FileStatus.PENDING.value,
                )
                await conn.execute(
                    """
                    INSERT INTO kb_documents (id, workspace, file_id, title, status)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    document_id, workspace, file_id, title, DocumentStatus.PENDING.value,
                )
                row = await conn.fetchrow(
                    f"""
                    SELECT {_DOCUMENT_COLUMNS}
                    FROM kb_documents d LEFT JOIN kb_files f ON f.id = d.file_id
                    WHERE d.id = $1
                    """,
                    document_id,
                )
            return _row_to_dict(row)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def find_document_by_object_key(self, workspace: str, object_key: str) -> dict[str, Any]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_DOCUMENT_COLUMNS}
                FROM kb_documents d JOIN kb_files f ON f.id = d.file_id
                WHERE d.workspace = $1 AND f.object_key = $2
                LIMIT 1
                """,
                workspace, object_key,
            )
            return _row_to_dict(row)
        finally:
            await conn.close()

    async def get_document(self, workspace: str, document_id: str) -> dict[str, Any]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_DOCUMENT_COLUMNS}
                FROM kb_documents d LEFT JOIN kb_files f ON f.id = d.file_id
                WHERE d.workspace = $1 AND d.id = $2
                """,
                workspace, document_id,
            )
            return _row_to_dict(row)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 状态流转
    # ------------------------------------------------------------------
    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_log: Optional[str] = None,
    ) -> None:
        conn = await self._conn()
        try:
            await conn.execute(
                """
                UPDATE kb_documents
                SET status = $2, error_log = $3, updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
                """,
                document_id, status.value, error_log,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 入库事务：文件 READY + 切片批量写入 + 文档 READY
    # ------------------------------------------------------------------
    async def complete_ingestion(self, document_id: str, file_id: str, chunks: list[ChunkRecord]) -> int:
        conn = await self._conn()
        try:
            async with conn.transaction():
                await conn.execute(
                    "UPDATE kb_files SET status = $2, updated_at = CURRENT_TIMESTAMP WHERE id = $1",
                    file_id, FileStatus.READY.value,
                )
                if chunks:
                    await conn.executemany(
                        """
                        INSERT INTO kb_chunks (
                            id, document_id, chunk_index, content,
                            metadata, token_count, content_hash
                        ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
                        """,
                        [
                            (
                                c.id, document_id, c.index, c.content,
                                json.dumps(c.metadata, ensure_ascii=False),
                                c.token_estimate, c.content_hash,
                            )
                            for c in chunks
                        ],
                    )
                await conn.execute(
                    """
                    UPDATE kb_documents
                    SET status = $2, token_count = $3, error_log = NULL, updated_at = CURRENT_TIMESTAMP
                    WHERE id = $1
                    """,
                    document_id, DocumentStatus.READY.value, sum(c.token_estimate for c in chunks),
                )
            return len(chunks)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 删除事务：切片 → 文件夹/标签关联 → 文档 → (可选) 文件
    # ------------------------------------------------------------------
    async def delete_document(
        self,
        workspace: str,
        document_id: str,
        delete_file: bool = False,
    ) -> Optional[ObjectLocator]:
        """返回被删除文件的对象定位 (未删除文件时为 None)；文档不存在抛 NotFound"""
        conn = await self._conn()
        try:
            async with conn.transaction():
                doc = await conn.fetchrow(
                    """
                    SELECT d.id, d.file_id, f.bucket, f.object_key
                    FROM kb_documents d LEFT JOIN kb_files f ON f.id = d.file_id
                    WHERE d.workspace = $1 AND d.id = $2
                    FOR UPDATE OF d
                    """,
                    workspace, document_id,
                )
                if doc is None:
                    raise NotFound(f"文档不存在: {document_id}", workspace=workspace, document_id=document_id)
                await conn.execute("DELETE FROM kb_chunks WHERE document_id = $1", document_id)
                await conn.execute("DELETE FROM kb_document_folders WHERE document_id = $1", document_id)
                await conn.execute("DELETE FROM kb_document_tags WHERE document_id = $1", document_id)
                await conn.execute("DELETE FROM kb_documents WHERE id = $1", document_id)
                if delete_file and doc["file_id"]:
                    await conn.execute("DELETE FROM kb_files WHERE id = $1", doc["file_id"])
                    return ObjectLocator(workspace=workspace, bucket=doc["bucket"], object_key=doc["object_key"])
            return None
        finally:
            await conn.close()
