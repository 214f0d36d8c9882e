"""
知识库后台任务

- ingestion: 对已落盘的对象执行解析 / 切块 / 入库
- deletion:  删除文档及其切片、文件夹 / 标签关联，可选删除源文件与对象
"""
from __future__ import annotations

import logging
from typing import Any

from config import QueueSettings

from .document_repository import DocumentStore
from .ingestion import IngestionOrchestrator
from .models import DeletionJob, IngestionJob, IngestionResult, ObjectLocator, UploadContext
from .queues import DELETION_QUEUE, INGESTION_QUEUE, RetryPolicy
from .storage import ObjectStorage, workspace_bucket_name
from .worker import JobRunner

logger = logging.getLogger("knowledge.tasks")


class KnowledgeTasks:

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        store: DocumentStore,
        storage: ObjectStorage,
        bucket_prefix: str,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._storage = storage
        self._bucket_prefix = bucket_prefix

    async def run_ingestion(self, payload: dict[str, Any]) -> IngestionResult:
        job = IngestionJob.model_validate(payload)
        locator = ObjectLocator(workspace=job.workspace_slug, bucket=job.bucket, object_key=job.object_key)
        context = UploadContext(
            workspace_slug=job.workspace_slug,
            filename=job.filename,
            size=job.size,
            mime_type=job.mime_type,
            uploader_id=job.uploader_id,
        )
        return await self._orchestrator.ingest(locator, context)

    async def run_deletion(self, payload: dict[str, Any]) -> None:
        job = DeletionJob.model_validate(payload)
        removed = await self._store.delete_document(job.workspace_slug, job.document_id, job.delete_file)
        if removed is not None:
            await self._storage.delete_object(removed.bucket, removed.object_key)

        expected = workspace_bucket_name(self._bucket_prefix, job.workspace_slug)
        if job.bucket is not None and job.bucket != expected:
            logger.warning(
                f"[KB] 删除任务 bucket 不一致: workspace={job.workspace_slug}, expected={expected}, got={job.bucket}"
            )
        logger.info(
            f"[KB] 文档已删除: workspace={job.workspace_slug}, doc={job.document_id}, "
            f"file_deleted={removed is not None}, reason={job.reason}"
        )


def policies_from_settings(settings: QueueSettings) -> tuple[RetryPolicy, RetryPolicy]:
    ingestion = RetryPolicy(
        attempts=settings.ingestion_attempts,
        backoff="exponential",
        delay_seconds=settings.ingestion_backoff_seconds,
    )
    deletion = RetryPolicy(
        attempts=settings.deletion_attempts,
        backoff="fixed",
        delay_seconds=settings.deletion_backoff_seconds,
    )
    return ingestion, deletion


def register_knowledge_queues(runner: JobRunner, tasks: KnowledgeTasks, settings: QueueSettings) -> None:
    ingestion_policy, deletion_policy = policies_from_settings(settings)
    runner.register(INGESTION_QUEUE, tasks.run_ingestion, ingestion_policy, settings.ingestion_concurrency)
    runner.register(DELETION_QUEUE, tasks.run_deletion, deletion_policy, settings.deletion_concurrency)
