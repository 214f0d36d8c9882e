"""
上传策略守卫单元测试
"""
from __future__ import annotations

import asyncio
import os
import sys

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from config import UploadPolicySettings
from knowledge.audit import RecordingAuditLogger
from knowledge.errors import PolicyViolation
from knowledge.policy import InMemoryRateLimiter, UploadPolicyGuard, UploadRequest


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _request(**overrides) -> UploadRequest:
    values = dict(workspace="ws", filename="a.txt", size=10, mime_type="text/plain", uploader_id="u1")
    values.update(overrides)
    return UploadRequest(**values)


def _guard(scanner=None, **settings):
    audit = RecordingAuditLogger()
    clock = FakeClock()
    guard = UploadPolicyGuard(
        UploadPolicySettings(**settings), InMemoryRateLimiter(clock=clock), audit, scanner=scanner,
    )
    return guard, audit, clock


# ---------------------------------------------------------------------------
# 限流
# ---------------------------------------------------------------------------

def test_rate_limiter_window() -> None:
    async def run():
        clock = FakeClock()
        limiter = InMemoryRateLimiter(clock=clock)
        results = [await limiter.hit("k", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]
        assert await limiter.hit("other", 3, 60)

        clock.now += 60
        assert await limiter.hit("k", 3, 60)

    asyncio.run(run())


def test_uploader_limit_rejects_next_request_until_window_elapses() -> None:
    async def run():
        guard, audit, clock = _guard(uploads_per_uploader_per_minute=3)
        for _ in range(3):
            await guard.check(_request())
        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request())
        assert exc.value.reason == PolicyViolation.RATE_LIMITED
        assert exc.value.detail == "uploader:u1"

        # 其他上传者不受影响
        await guard.check(_request(uploader_id="u2"))

        clock.now += 61
        await guard.check(_request())
        assert audit.names().count("upload.rejected") == 1

    asyncio.run(run())


def test_anonymous_uploaders_share_a_bucket() -> None:
    async def run():
        guard, _, _ = _guard(uploads_per_uploader_per_minute=1)
        await guard.check(_request(uploader_id=None))
        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request(uploader_id=None))
        assert exc.value.detail == "uploader:anonymous"

    asyncio.run(run())


def test_mode_limit() -> None:
    async def run():
        guard, _, _ = _guard(uploads_per_mode_per_minute=2)
        await guard.check(_request(uploader_id="a", mode="resumable"))
        await guard.check(_request(uploader_id="b", mode="resumable"))
        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request(uploader_id="c", mode="resumable"))
        assert exc.value.detail == "mode:resumable"
        await guard.check(_request(uploader_id="c", mode="direct"))

    asyncio.run(run())


# ---------------------------------------------------------------------------
# 大小 / 类型 / 扫描
# ---------------------------------------------------------------------------

def test_size_and_mime_rejections_are_audited() -> None:
    async def run():
        guard, audit, _ = _guard(max_upload_bytes=100)
        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request(size=101))
        assert exc.value.reason == PolicyViolation.SIZE_EXCEEDED

        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request(mime_type="application/zip"))
        assert exc.value.reason == PolicyViolation.MIME_NOT_ALLOWED

        assert audit.names() == ["upload.rejected", "upload.rejected"]
        assert audit.events[0]["reason"] == PolicyViolation.SIZE_EXCEEDED
        assert audit.events[1]["reason"] == PolicyViolation.MIME_NOT_ALLOWED
        assert audit.events[1]["workspace"] == "ws"

    asyncio.run(run())


def test_size_at_limit_is_accepted() -> None:
    async def run():
        guard, audit, _ = _guard(max_upload_bytes=100)
        await guard.check(_request(size=100))
        assert audit.names() == ["upload.accepted"]
        assert audit.events[0]["actor"] == "u1"
        assert audit.events[0]["filename"] == "a.txt"

    asyncio.run(run())


def test_scanner_failures() -> None:
    def sync_scanner(request, data):
        if data and b"EICAR" in data:
            raise RuntimeError("malware signature")

    async def async_scanner(request, data):
        raise RuntimeError("scanner offline")

    async def run():
        guard, audit, _ = _guard(scanner=sync_scanner)
        await guard.check(_request(), b"clean")
        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request(), b"xxEICARxx")
        assert exc.value.reason == PolicyViolation.SCAN_FAILED
        assert "malware signature" in exc.value.detail

        guard, _, _ = _guard(scanner=async_scanner)
        with pytest.raises(PolicyViolation) as exc:
            await guard.check(_request())
        assert exc.value.reason == PolicyViolation.SCAN_FAILED

    asyncio.run(run())
