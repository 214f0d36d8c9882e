"""
文档入库编排

record_upload:  内容校验和查重 → 单次上传到 {prefix}-{workspace} → 登记文件 + 文档 (PENDING)
register_object: 断点续传完成后登记文件 + 文档 (同样按校验和查重)
ingest:         定位文档 → EMBEDDING → 下载 → 解析 → 切块 → 入库事务 (READY) → 尽力向量化

入库事务保证文档 READY 当且仅当切片全部落库且源文件 READY；
向量化在事务之后逐块进行，失败只记日志，不影响文档状态 (关键词检索仍可用)。
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

from config import ChunkingSettings

from . import audit as audit_events
from .audit import AuditLogger
from .chunking import ChunkRecord
from .document_repository import DocumentStore
from .embedding import EmbeddingProvider
from .embedding_cache import EmbeddingCacheService
from .errors import NotFound
from .models import DocumentStatus, IngestionResult, ObjectLocator, UploadContext, UploadResult
from .parsers import parse_document
from .storage import ObjectStorage, download_object, upload_buffer, workspace_bucket_name
from .utils import checksum

logger = logging.getLogger("knowledge.ingestion")


def build_object_key(workspace_slug: str, filename: str) -> str:
    return f"{workspace_slug}/{int(time.time() * 1000)}-{filename}"


class IngestionOrchestrator:

    def __init__(
        self,
        store: DocumentStore,
        storage: ObjectStorage,
        audit: AuditLogger,
        *,
        embedding_cache: Optional[EmbeddingCacheService] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        chunking: Optional[ChunkingSettings] = None,
    ) -> None:
        self._store = store
        self._storage = storage
        self._audit = audit
        self._embedding_cache = embedding_cache
        self._embedding_provider = embedding_provider
        self._chunking = chunking or ChunkingSettings()

    # ------------------------------------------------------------------
    # 上传登记
    # ------------------------------------------------------------------
    async def record_upload(self, data: bytes, context: UploadContext, bucket_prefix: str) -> ObjectLocator:
        digest = checksum(data)
        existing = await self._store.find_file_by_checksum(context.workspace_slug, digest)
        if existing:
            logger.info(
                f"[KB] 内容已存在，复用已有文件: workspace={context.workspace_slug}, key={existing['object_key']}"
            )
            return ObjectLocator(
                workspace=context.workspace_slug,
                bucket=existing["bucket"],
                object_key=existing["object_key"],
            )

        locator = ObjectLocator(
            workspace=context.workspace_slug,
            bucket=workspace_bucket_name(bucket_prefix, context.workspace_slug),
            object_key=build_object_key(context.workspace_slug, context.filename),
        )
        await self._storage.ensure_bucket(locator.bucket)
        result = await upload_buffer(self._storage, data, locator, context.mime_type)
        await self._store.create_file_and_document(
            workspace=context.workspace_slug,
            bucket=result.bucket,
            object_key=result.object_key,
            size=context.size or result.size,
            checksum=result.checksum,
            title=context.filename,
            mime_type=context.mime_type,
            uploader_id=context.uploader_id,
        )
        return locator

    async def register_object(self, result: UploadResult, context: UploadContext) -> ObjectLocator:
        existing = await self._store.find_file_by_checksum(context.workspace_slug, result.checksum)
        if existing:
            if (existing["bucket"], existing["object_key"]) != (result.bucket, result.object_key):
                await self._storage.delete_object(result.bucket, result.object_key)
                logger.info(
                    f"[KB] 重复内容，删除新对象并复用已有文件: "
                    f"removed={result.object_key}, kept={existing['object_key']}"
                )
            return ObjectLocator(
                workspace=context.workspace_slug,
                bucket=existing["bucket"],
                object_key=existing["object_key"],
            )
        await self._store.create_file_and_document(
            workspace=context.workspace_slug,
            bucket=result.bucket,
            object_key=result.object_key,
            size=result.size,
            checksum=result.checksum,
            title=context.filename,
            mime_type=result.mime_type or context.mime_type,
            uploader_id=context.uploader_id,
        )
        return ObjectLocator(workspace=result.workspace, bucket=result.bucket, object_key=result.object_key)

    # ------------------------------------------------------------------
    # 入库
    # ------------------------------------------------------------------
    async def ingest(
        self,
        locator: ObjectLocator,
        context: UploadContext,
        data: Optional[bytes] = None,
    ) -> IngestionResult:
        started = time.monotonic()
        doc = await self._store.find_document_by_object_key(context.workspace_slug, locator.object_key)
        if not doc:
            self._emit_finished(context, None, started, "not_found", object_key=locator.object_key)
            raise NotFound(
                f"对象未登记为文档: {locator.object_key}",
                workspace=context.workspace_slug,
                object_key=locator.object_key,
            )
        doc_id = doc["id"]
        if doc["status"] == DocumentStatus.READY.value:
            self._emit_finished(context, doc_id, started, "skipped")
            logger.info(f"[KB] 文档已入库，跳过: doc={doc_id}")
            return IngestionResult(document_id=doc_id, skipped=True)

        self._audit.emit(
            audit_events.INGESTION_STARTED,
            workspace=context.workspace_slug,
            actor=context.uploader_id,
            filename=context.filename,
            size=context.size,
            document_id=doc_id,
        )
        await self._store.update_status(doc_id, DocumentStatus.EMBEDDING)
        try:
            if data is None:
                data = (await download_object(self._storage, locator)).data
            _, chunks = parse_document(
                data,
                context.filename,
                context.size or len(data),
                context.mime_type,
                {
                    "max_characters": self._chunking.max_characters,
                    "overlap": self._chunking.overlap,
                    "checksum": doc.get("checksum"),
                },
            )
            created = await self._store.complete_ingestion(doc_id, doc["file_id"], chunks)
        except Exception as e:
            await self._store.update_status(doc_id, DocumentStatus.FAILED, str(e)[:2000])
            self._emit_finished(context, doc_id, started, "failed", error=str(e))
            logger.error(f"[KB] 文档入库失败: doc={doc_id}, key={locator.object_key}, err={e}")
            raise

        embedded = await self._embed_chunks(chunks)
        event = self._emit_finished(context, doc_id, started, "ready", chunks=created)
        logger.info(
            f"[KB] 文档入库完成: doc={doc_id}, chunks={created}, embedded={embedded}, {event['duration_ms']}ms"
        )
        return IngestionResult(document_id=doc_id, chunks_created=created, embedded=embedded)

    def _emit_finished(
        self,
        context: UploadContext,
        document_id: Optional[str],
        started: float,
        result: str,
        **fields: Any,
    ) -> dict[str, Any]:
        """每次入库尝试都以 ingestion.finished 收尾，result: ready / failed / skipped / not_found"""
        return self._audit.emit(
            audit_events.INGESTION_FINISHED,
            workspace=context.workspace_slug,
            actor=context.uploader_id,
            filename=context.filename,
            size=context.size,
            document_id=document_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            result=result,
            **fields,
        )

    async def ingest_buffer(self, data: bytes, context: UploadContext, bucket_prefix: str) -> IngestionResult:
        locator = await self.record_upload(data, context, bucket_prefix)
        return await self.ingest(locator, context, data)

    async def _embed_chunks(self, chunks: list[ChunkRecord]) -> int:
        if self._embedding_cache is None or self._embedding_provider is None:
            return 0
        embedded = 0
        for chunk in chunks:
            try:
                await self._embedding_cache.attach_to_chunk(
                    chunk.id, chunk.content, self._embedding_provider, chunk.token_estimate,
                )
                embedded += 1
            except Exception as e:
                logger.warning(f"[KB] 切片向量化失败，保留关键词检索: chunk={chunk.id}, err={e}")
        return embedded

