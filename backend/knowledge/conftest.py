"""
知识库测试公共夹具：全部使用进程内实现 (对象存储 / 会话 / 文档 / 队列)，不依赖外部服务
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from config import QueueSettings, Settings
from knowledge.audit import RecordingAuditLogger
from knowledge.embedding_cache import EmbeddingCacheService
from knowledge.ingestion import IngestionOrchestrator
from knowledge.memory_store import InMemoryKnowledgeStore
from knowledge.models import EmbeddingResult
from knowledge.policy import InMemoryRateLimiter, UploadPolicyGuard
from knowledge.queues import InMemoryJobBroker
from knowledge.search import HybridSearchEngine
from knowledge.service import KnowledgeService
from knowledge.storage import InMemoryObjectStorage
from knowledge.tasks import KnowledgeTasks, register_knowledge_queues
from knowledge.upload_sessions import InMemoryUploadSessionStore
from knowledge.uploads import ResumableUploadManager
from knowledge.worker import JobRunner


class KeywordEmbeddingProvider:
    """按关键词出现与否生成向量，同样的文本总是得到同样的向量"""
    model = "keyword-embedding"
    vocabulary = ("refund", "travel", "security", "revenue")

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls += 1
        lower = text.lower()
        vector = [1.0 if word in lower else 0.0 for word in self.vocabulary] + [0.1]
        return EmbeddingResult(embedding=vector, token_count=len(text.split()), model=self.model)


@dataclass
class MemoryEnv:
    service: KnowledgeService
    store: InMemoryKnowledgeStore
    storage: InMemoryObjectStorage
    broker: InMemoryJobBroker
    audit: RecordingAuditLogger
    provider: KeywordEmbeddingProvider


def build_memory_env(with_embedding: bool = True) -> MemoryEnv:
    settings = Settings(queues=QueueSettings(
        poll_interval_seconds=0.01,
        ingestion_backoff_seconds=0.01,
        deletion_backoff_seconds=0.01,
    ))
    audit = RecordingAuditLogger()
    store = InMemoryKnowledgeStore()
    storage = InMemoryObjectStorage()
    broker = InMemoryJobBroker()
    provider = KeywordEmbeddingProvider()

    guard = UploadPolicyGuard(settings.upload_policy, InMemoryRateLimiter(), audit)
    uploads = ResumableUploadManager(storage, InMemoryUploadSessionStore(), guard=guard)
    orchestrator = IngestionOrchestrator(
        store,
        storage,
        audit,
        embedding_cache=EmbeddingCacheService(store),
        embedding_provider=provider if with_embedding else None,
        chunking=settings.chunking,
    )
    runner = JobRunner(broker, poll_interval=settings.queues.poll_interval_seconds)
    tasks = KnowledgeTasks(orchestrator, store, storage, settings.storage.bucket_prefix)
    register_knowledge_queues(runner, tasks, settings.queues)
    service = KnowledgeService(
        settings=settings,
        guard=guard,
        uploads=uploads,
        orchestrator=orchestrator,
        search_engine=HybridSearchEngine(store, settings.search),
        runner=runner,
        embedding_provider=provider if with_embedding else None,
        tasks=tasks,
    )
    return MemoryEnv(service, store, storage, broker, audit, provider)


@pytest.fixture
def env() -> MemoryEnv:
    return build_memory_env()


@pytest.fixture
def env_without_embedding() -> MemoryEnv:
    return build_memory_env(with_embedding=False)
