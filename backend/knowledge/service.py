"""
知识库服务门面

把策略守卫、断点续传、入库编排、混合检索与后台任务串成 HTTP 层直接调用的几个操作:
  start_upload → upload_part* → complete_upload (登记文档并投递 ingestion 任务)
  search / request_deletion

build_service(settings) 组装生产依赖: S3 + PostgreSQL + Redis 限流 + RabbitMQ 队列 + OpenAI embedding。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from config import Settings

from .audit import AuditLogger
from .embedding import EmbeddingProvider
from .ingestion import IngestionOrchestrator, build_object_key
from .models import (
    DeletionJob,
    HybridSearchResult,
    IngestionJob,
    ObjectLocator,
    SearchFilters,
    UploadContext,
    UploadPart,
    UploadResult,
    UploadSession,
)
from .policy import UploadPolicyGuard, UploadRequest
from .queues import DELETION_QUEUE, INGESTION_QUEUE, JobEnvelope
from .search import HybridSearchEngine
from .storage import workspace_bucket_name
from .tasks import KnowledgeTasks, register_knowledge_queues
from .uploads import ResumableUploadManager
from .worker import JobRunner

logger = logging.getLogger("knowledge.service")


@dataclass
class KnowledgeService:
    settings: Settings
    guard: UploadPolicyGuard
    uploads: ResumableUploadManager
    orchestrator: IngestionOrchestrator
    search_engine: HybridSearchEngine
    runner: JobRunner
    embedding_provider: Optional[EmbeddingProvider] = None
    tasks: Optional[KnowledgeTasks] = None

    # ------------------------------------------------------------------
    # 上传
    # ------------------------------------------------------------------
    async def start_upload(
        self,
        request: UploadRequest,
        part_size: Optional[int] = None,
        checksum: Optional[str] = None,
    ) -> UploadSession:
        await self.guard.check(request)
        locator = ObjectLocator(
            workspace=request.workspace,
            bucket=workspace_bucket_name(self.settings.storage.bucket_prefix, request.workspace),
            object_key=build_object_key(request.workspace, request.filename),
        )
        return await self.uploads.start(locator, request.mime_type, part_size, checksum)

    async def upload_part(
        self,
        session_id: str,
        part_number: int,
        data: bytes,
        uploader_id: Optional[str] = None,
    ) -> UploadPart:
        return await self.uploads.upload_chunk(session_id, data, part_number, uploader_id)

    async def complete_upload(self, session_id: str, context: UploadContext) -> tuple[UploadResult, JobEnvelope]:
        result = await self.uploads.complete(session_id)
        locator = await self.orchestrator.register_object(result, context)
        job = IngestionJob(
            workspace_slug=context.workspace_slug,
            object_key=locator.object_key,
            bucket=locator.bucket,
            filename=context.filename,
            size=result.size,
            mime_type=result.mime_type or context.mime_type,
            uploader_id=context.uploader_id,
        )
        envelope = await self.runner.enqueue(INGESTION_QUEUE, job)
        return result, envelope

    async def abort_upload(self, session_id: str) -> None:
        await self.uploads.abort(session_id)

    # ------------------------------------------------------------------
    # 检索 / 删除
    # ------------------------------------------------------------------
    async def search(
        self,
        query: str,
        filters: SearchFilters,
        embedding: Optional[list[float]] = None,
        vector_k: Optional[int] = None,
        keyword_k: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[HybridSearchResult]:
        if not embedding:
            if self.embedding_provider is None:
                raise ValueError("未配置 embedding 服务，请求中必须携带查询向量")
            embedding = (await self.embedding_provider.embed(query)).embedding
        return await self.search_engine.search(
            query, embedding, filters, vector_k=vector_k, keyword_k=keyword_k, limit=limit,
        )

    async def request_deletion(self, job: DeletionJob) -> JobEnvelope:
        if job.bucket is None:
            job = job.model_copy(update={
                "bucket": workspace_bucket_name(self.settings.storage.bucket_prefix, job.workspace_slug),
            })
        return await self.runner.enqueue(DELETION_QUEUE, job)


def build_service(settings: Settings, audit: Optional[AuditLogger] = None) -> KnowledgeService:
    """生产依赖组装（不建立任何连接，连接在首次调用时按需创建）"""
    from infra.rabbitmq.service import RabbitJobBroker
    from infra.redis.service import RedisRateLimiter, get_client
    from infra.s3.service import S3ObjectStorage

    from .chunk_repository import ChunkRepository
    from .document_repository import DocumentRepository
    from .embedding import OpenAIEmbeddingProvider
    from .embedding_cache import EmbeddingCacheService
    from .upload_sessions import PostgresUploadSessionStore

    audit = audit or AuditLogger()
    dsn = settings.postgres.dsn
    storage = S3ObjectStorage(settings.storage)
    documents = DocumentRepository(dsn)
    chunks = ChunkRepository(dsn)

    provider: Optional[EmbeddingProvider] = None
    if settings.embedding.enabled:
        provider = OpenAIEmbeddingProvider(settings.embedding)
    else:
        logger.warning("[KB] 未配置 embedding API key，仅关键词检索可用")

    guard = UploadPolicyGuard(settings.upload_policy, RedisRateLimiter(get_client(settings.redis.url)), audit)
    uploads = ResumableUploadManager(
        storage,
        PostgresUploadSessionStore(dsn),
        guard=guard,
        default_part_size=settings.upload_policy.default_part_size,
    )
    orchestrator = IngestionOrchestrator(
        documents,
        storage,
        audit,
        embedding_cache=EmbeddingCacheService(chunks),
        embedding_provider=provider,
        chunking=settings.chunking,
    )
    runner = JobRunner(
        RabbitJobBroker(settings.rabbitmq.url, prefix=settings.queues.prefix),
        poll_interval=settings.queues.poll_interval_seconds,
    )
    tasks = KnowledgeTasks(orchestrator, documents, storage, settings.storage.bucket_prefix)
    register_knowledge_queues(runner, tasks, settings.queues)
    return KnowledgeService(
        settings=settings,
        guard=guard,
        uploads=uploads,
        orchestrator=orchestrator,
        search_engine=HybridSearchEngine(chunks, settings.search),
        runner=runner,
        embedding_provider=provider,
        tasks=tasks,
    )
