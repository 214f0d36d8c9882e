"""
上传策略守卫

按固定顺序检查，任一失败即审计 upload.rejected 并抛出 PolicyViolation，全程不触达对象存储:
  1. 大小上限
  2. MIME 白名单
  3. 单上传者限流 (key = uploader:{id|anonymous})
  4. 单上传模式限流 (key = mode:{mode})
  5. 内容扫描钩子 (可选，异常视为 scan_failed)
全部通过后审计 upload.accepted。

限流为固定窗口计数：窗口过期则重置为 1 并放行；计数已达上限则拒绝；否则自增放行。
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from pydantic import BaseModel, Field

from config import UploadPolicySettings

from . import audit as audit_events
from .audit import AuditLogger
from .errors import PolicyViolation
from .models import UploadSession

logger = logging.getLogger("knowledge.policy")

ANONYMOUS = "anonymous"


class UploadRequest(BaseModel):
    workspace: str
    filename: str
    size: int = Field(..., ge=0)
    mime_type: Optional[str] = None
    uploader_id: Optional[str] = None
    mode: str = "direct"


Scanner = Callable[[UploadRequest, Optional[bytes]], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# 限流
# ---------------------------------------------------------------------------

class RateLimiter(Protocol):

    async def hit(self, key: str, limit: int, window_seconds: float) -> bool: ...


@dataclass
class _Window:
    count: int
    expires_at: float


class InMemoryRateLimiter:
    """单进程固定窗口计数器，clock 可注入便于测试窗口重置"""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, limit: int, window_seconds: float) -> bool:
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or window.expires_at <= now:
                self._windows[key] = _Window(count=1, expires_at=now + window_seconds)
                return True
            if window.count >= limit:
                return False
            window.count += 1
            return True


# ---------------------------------------------------------------------------
# 守卫
# ---------------------------------------------------------------------------

class UploadPolicyGuard:

    def __init__(
        self,
        settings: UploadPolicySettings,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        scanner: Optional[Scanner] = None,
    ) -> None:
        self.settings = settings
        self._limiter = rate_limiter
        self._audit = audit
        self._scanner = scanner

    async def check(self, request: UploadRequest, data: Optional[bytes] = None) -> None:
        s = self.settings
        if request.size > s.max_upload_bytes:
            self._reject(request, PolicyViolation.SIZE_EXCEEDED,
                         f"{request.size} > {s.max_upload_bytes}")
        if request.mime_type not in s.allowed_mime_types:
            self._reject(request, PolicyViolation.MIME_NOT_ALLOWED, str(request.mime_type))

        uploader_key = f"uploader:{request.uploader_id or ANONYMOUS}"
        if not await self._limiter.hit(uploader_key, s.uploads_per_uploader_per_minute, s.window_seconds):
            self._reject(request, PolicyViolation.RATE_LIMITED, uploader_key)
        mode_key = f"mode:{request.mode}"
        if not await self._limiter.hit(mode_key, s.uploads_per_mode_per_minute, s.window_seconds):
            self._reject(request, PolicyViolation.RATE_LIMITED, mode_key)

        if self._scanner is not None:
            try:
                result = self._scanner(request, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"[Upload] 内容扫描未通过: workspace={request.workspace}, err={e}")
                self._reject(request, PolicyViolation.SCAN_FAILED, str(e))

        self._audit.emit(
            audit_events.UPLOAD_ACCEPTED,
            workspace=request.workspace,
            actor=request.uploader_id or ANONYMOUS,
            filename=request.filename,
            size=request.size,
            mime_type=request.mime_type,
            mode=request.mode,
        )

    def check_projected_size(
        self,
        session: UploadSession,
        incoming_size: int,
        part_number: int,
        uploader_id: Optional[str] = None,
    ) -> int:
        """分片上传前的累计大小校验，重传分片时先扣除旧分片大小；返回预计总大小"""
        existing = session.part(part_number)
        projected = session.size - (existing.size if existing else 0) + incoming_size
        if projected > self.settings.max_upload_bytes:
            request = UploadRequest(
                workspace=session.workspace,
                filename=session.object_key,
                size=projected,
                mime_type=session.mime_type,
                uploader_id=uploader_id,
                mode="resumable",
            )
            self._reject(request, PolicyViolation.SIZE_EXCEEDED,
                         f"{projected} > {self.settings.max_upload_bytes}", session_id=session.id)
        return projected

    def _reject(self, request: UploadRequest, reason: str, detail: str, **context: Any) -> None:
        self._audit.emit(
            audit_events.UPLOAD_REJECTED,
            workspace=request.workspace,
            actor=request.uploader_id or ANONYMOUS,
            filename=request.filename,
            size=request.size,
            mime_type=request.mime_type,
            mode=request.mode,
            reason=reason,
            detail=detail,
            **context,
        )
        raise PolicyViolation(reason, detail, workspace=request.workspace, **context)
