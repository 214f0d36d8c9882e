"""
入库链路测试：断点续传 → 登记 → ingestion 任务 → 切块落库 → 检索 → 删除
全部基于 conftest.build_memory_env 的进程内实现
"""
from __future__ import annotations

import asyncio
import logging
import math
import os
import sys

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from config import MIB
from knowledge.errors import NotFound
from knowledge.ingestion import build_object_key
from knowledge.models import DeletionJob, DocumentStatus, ObjectLocator, SearchFilters, UploadContext
from knowledge.policy import UploadRequest


def _document_text(length: int) -> bytes:
    sentence = "the onboarding handbook explains refund and travel rules. "
    return (sentence * (length // len(sentence) + 1))[:length].encode("ascii")


def _context(filename: str, size: int = 0, mime_type: str = "text/plain") -> UploadContext:
    return UploadContext(workspace_slug="acme", filename=filename, size=size, mime_type=mime_type, uploader_id="u1")


def test_build_object_key() -> None:
    key = build_object_key("acme", "report.pdf")
    prefix, name = key.split("/", 1)
    stamp, filename = name.split("-", 1)
    assert prefix == "acme"
    assert filename == "report.pdf"
    assert stamp.isdigit()


# ---------------------------------------------------------------------------
# 端到端
# ---------------------------------------------------------------------------

def test_resumable_upload_to_ready_document(env_without_embedding) -> None:
    env = env_without_embedding
    data = _document_text(5 * MIB)

    async def run():
        service = env.service
        session = await service.start_upload(
            UploadRequest(workspace="acme", filename="handbook.txt", size=len(data),
                          mime_type="text/plain", uploader_id="u1", mode="resumable"),
            part_size=2 * MIB,
        )
        assert session.bucket == "kb-acme"
        for number, offset in enumerate(range(0, len(data), 2 * MIB), start=1):
            await service.upload_part(session.id, number, data[offset:offset + 2 * MIB], "u1")

        result, envelope = await service.complete_upload(session.id, _context("handbook.txt", len(data)))
        assert result.size == len(data) == 5 * MIB
        assert envelope.payload["object_key"] == session.object_key
        assert env.storage.objects[("kb-acme", session.object_key)].data == data

        await service.runner.start()
        assert await service.runner.wait_idle(timeout=30)
        await service.runner.close()

        assert len(env.store.documents) == 1
        doc = next(iter(env.store.documents.values()))
        assert doc.status == DocumentStatus.READY
        chunks = env.store.chunks_for(doc.id)
        assert len(chunks) == math.ceil((len(data) - 200) / 1800)
        assert doc.token_count == sum(c.token_estimate for c in chunks)
        assert env.broker.messages("ingestion:dlq") == []
        assert env.audit.names() == ["upload.accepted", "ingestion.started", "ingestion.finished"]
        assert env.audit.events[-1]["result"] == "ready"

    asyncio.run(run())


def test_ingest_buffer_embeds_chunks_and_is_searchable(env) -> None:
    async def run():
        orchestrator = env.service.orchestrator
        result = await orchestrator.ingest_buffer(
            b"refund requests are handled within 14 days", _context("refund.txt"), "kb",
        )
        await orchestrator.ingest_buffer(
            b"travel expenses need a receipt", _context("travel.txt"), "kb",
        )
        assert result.chunks_created == 1
        assert result.embedded == 1
        chunk = env.store.chunks_for(result.document_id)[0]
        assert env.store.embedding_of(chunk.id) is not None

        hits = await env.service.search("refund", SearchFilters(workspace="acme"))
        assert hits[0].document_id == result.document_id
        assert hits[0].document_title == "refund.txt"
        assert hits[0].score == 1.0
        assert {h.source for h in hits if h.document_id == result.document_id} == {"vector", "keyword"}

        assert await env.service.search("refund", SearchFilters(workspace="other")) == []

    asyncio.run(run())


def test_search_without_provider_needs_embedding(env_without_embedding) -> None:
    async def run():
        with pytest.raises(ValueError):
            await env_without_embedding.service.search("refund", SearchFilters(workspace="acme"))
        assert await env_without_embedding.service.search(
            "refund", SearchFilters(workspace="acme"), embedding=[1.0, 0.0],
        ) == []

    asyncio.run(run())


def test_duplicate_content_reuses_file_and_skips_reingest(env) -> None:
    async def run():
        orchestrator = env.service.orchestrator
        data = b"security checklist for new laptops"
        first = await orchestrator.ingest_buffer(data, _context("a.txt"), "kb")
        second = await orchestrator.ingest_buffer(data, _context("copy-of-a.txt"), "kb")

        assert second.document_id == first.document_id
        assert second.skipped is True
        assert len(env.store.files) == 1
        assert env.storage.calls.count("put_object") == 1
        # 相同内容的切片只调用一次 embedding
        assert env.provider.calls == 1
        skipped = env.audit.events[-1]
        assert skipped["event"] == "ingestion.finished"
        assert skipped["result"] == "skipped"
        assert skipped["document_id"] == first.document_id
        assert skipped["duration_ms"] >= 0

    asyncio.run(run())


def test_completed_duplicate_upload_drops_new_object(env_without_embedding) -> None:
    env = env_without_embedding
    data = _document_text(3 * MIB)

    async def upload(filename: str):
        session = await env.service.start_upload(
            UploadRequest(workspace="acme", filename=filename, size=len(data),
                          mime_type="text/plain", uploader_id="u1", mode="resumable"),
            part_size=2 * MIB,
        )
        await env.service.upload_part(session.id, 1, data[:2 * MIB], "u1")
        await env.service.upload_part(session.id, 2, data[2 * MIB:], "u1")
        _, envelope = await env.service.complete_upload(session.id, _context(filename, len(data)))
        return session, envelope

    async def run():
        first, _ = await upload("handbook.txt")
        second, envelope = await upload("handbook-copy.txt")

        # 第二次上传指向已有对象，新对象被清理
        assert envelope.payload["object_key"] == first.object_key
        assert ("kb-acme", first.object_key) in env.storage.objects
        assert ("kb-acme", second.object_key) not in env.storage.objects
        assert len(env.store.files) == 1

    asyncio.run(run())


def test_embedding_cache_shared_across_workspaces(env) -> None:
    async def run():
        orchestrator = env.service.orchestrator
        await orchestrator.ingest_buffer(b"security policy", _context("a.txt"), "kb")
        other = UploadContext(workspace_slug="globex", filename="b.txt", mime_type="text/plain")
        result = await orchestrator.ingest_buffer(b"security policy", other, "kb")
        assert result.embedded == 1
        assert len(env.store.files) == 2
        assert env.provider.calls == 1

    asyncio.run(run())


def test_invalid_json_marks_document_failed(env) -> None:
    async def run():
        with pytest.raises(ValueError):
            await env.service.orchestrator.ingest_buffer(
                b"{not json", _context("data.json", mime_type="application/json"), "kb",
            )
        doc = next(iter(env.store.documents.values()))
        assert doc.status == DocumentStatus.FAILED
        assert doc.error_log
        assert env.store.chunks == {}
        assert env.audit.events[-1]["event"] == "ingestion.finished"
        assert env.audit.events[-1]["result"] == "failed"

    asyncio.run(run())


def test_ingest_unknown_object_is_not_found(env) -> None:
    async def run():
        locator = ObjectLocator(workspace="acme", bucket="kb-acme", object_key="acme/missing.txt")
        with pytest.raises(NotFound):
            await env.service.orchestrator.ingest(locator, _context("missing.txt"))

        assert env.audit.names() == ["ingestion.finished"]
        event = env.audit.events[0]
        assert event["result"] == "not_found"
        assert event["object_key"] == "acme/missing.txt"
        assert "document_id" not in event
        assert event["duration_ms"] >= 0

    asyncio.run(run())


# ---------------------------------------------------------------------------
# 删除
# ---------------------------------------------------------------------------

def test_deletion_job_removes_document_and_object(env) -> None:
    async def run():
        result = await env.service.orchestrator.ingest_buffer(b"revenue report", _context("r.txt"), "kb")
        doc = await env.store.get_document("acme", result.document_id)
        key = ("kb-acme", doc["object_key"])
        assert key in env.storage.objects

        envelope = await env.service.request_deletion(
            DeletionJob(workspace_slug="acme", document_id=result.document_id, delete_file=True, reason="gdpr"),
        )
        assert envelope.payload["bucket"] == "kb-acme"
        await env.service.runner.start()
        assert await env.service.runner.wait_idle(timeout=5)
        await env.service.runner.close()

        assert env.store.documents == {}
        assert env.store.chunks == {}
        assert env.store.files == {}
        assert key not in env.storage.objects

    asyncio.run(run())


def test_deletion_keeps_file_unless_requested(env) -> None:
    async def run():
        result = await env.service.orchestrator.ingest_buffer(b"revenue report", _context("r.txt"), "kb")
        await env.service.tasks.run_deletion(
            DeletionJob(workspace_slug="acme", document_id=result.document_id).model_dump(),
        )
        assert env.store.documents == {}
        assert len(env.store.files) == 1
        assert env.storage.calls.count("delete_object") == 0

    asyncio.run(run())


def test_deletion_warns_on_bucket_mismatch(env, caplog) -> None:
    async def run():
        result = await env.service.orchestrator.ingest_buffer(b"revenue report", _context("r.txt"), "kb")
        await env.service.tasks.run_deletion(
            DeletionJob(workspace_slug="acme", document_id=result.document_id, bucket="kb-elsewhere").model_dump(),
        )

    with caplog.at_level(logging.WARNING, logger="knowledge.tasks"):
        asyncio.run(run())
    assert any("bucket 不一致" in r.getMessage() for r in caplog.records)


def test_deletion_of_missing_document_goes_to_dead_letter(env) -> None:
    async def run():
        await env.service.request_deletion(DeletionJob(workspace_slug="acme", document_id="nope"))
        await env.service.runner.start()
        assert await env.service.runner.wait_idle(timeout=5)
        await env.service.runner.close()

        dead = env.broker.messages("deletion:dlq")
        assert len(dead) == 1
        assert dead[0].payload["document_id"] == "nope"
        assert dead[0].attempts_made == 1

    asyncio.run(run())
