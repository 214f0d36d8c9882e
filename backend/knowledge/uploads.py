"""
断点续传上传管理

状态机: pending → uploading → completed，aborted / failed 为另外两个终态。
同一 part_number 重传视为幂等重试，替换旧分片记录；会话 size 恒等于分片大小之和。
"""
from __future__ import annotations

import logging
import uuid
from typing import Optional

from config import MIB

from .errors import NotFound, UploadStateError
from .models import ObjectLocator, UploadPart, UploadResult, UploadSession, UploadStatus, utcnow
from .policy import UploadPolicyGuard
from .storage import ObjectStorage
from .upload_sessions import UploadSessionStore
from .utils import checksum, etag_checksum

logger = logging.getLogger("knowledge.uploads")

DEFAULT_PART_SIZE = 5 * MIB


class ResumableUploadManager:

    def __init__(
        self,
        storage: ObjectStorage,
        store: UploadSessionStore,
        *,
        guard: Optional[UploadPolicyGuard] = None,
        default_part_size: int = DEFAULT_PART_SIZE,
    ) -> None:
        self._storage = storage
        self._store = store
        self._guard = guard
        self._default_part_size = default_part_size

    async def start(
        self,
        locator: ObjectLocator,
        mime_type: Optional[str] = None,
        part_size: Optional[int] = None,
        checksum: Optional[str] = None,
    ) -> UploadSession:
        await self._storage.ensure_bucket(locator.bucket)
        upload_id = await self._storage.create_multipart_upload(locator.bucket, locator.object_key, mime_type)
        session = UploadSession(
            id=f"{locator.workspace}:{uuid.uuid4().hex}",
            upload_id=upload_id,
            workspace=locator.workspace,
            bucket=locator.bucket,
            object_key=locator.object_key,
            mime_type=mime_type,
            part_size=part_size or self._default_part_size,
            checksum=checksum,
            status=UploadStatus.PENDING,
        )
        await self._store.create(session)
        logger.info(f"[Upload] 会话创建: id={session.id}, key={locator.object_key}")
        return session

    async def upload_chunk(
        self,
        session_id: str,
        data: bytes,
        part_number: int,
        uploader_id: Optional[str] = None,
    ) -> UploadPart:
        if part_number < 1:
            raise ValueError(f"part_number 必须从 1 开始: {part_number}")
        session = await self._require_open(session_id)
        if self._guard is not None:
            self._guard.check_projected_size(session, len(data), part_number, uploader_id)

        etag = await self._storage.upload_part(
            session.bucket, session.object_key, session.upload_id, part_number, data,
        )
        part = UploadPart(part_number=part_number, size=len(data), etag=etag, checksum=checksum(data))
        updated = await self._store.put_part(session_id, part)
        logger.debug(f"[Upload] 分片写入: id={session_id}, part={part_number}, total={updated.size}")
        return part

    async def complete(self, session_id: str) -> UploadResult:
        session = await self._require_open(session_id)
        parts = sorted(session.parts, key=lambda p: p.part_number)
        await self._storage.complete_multipart_upload(
            session.bucket,
            session.object_key,
            session.upload_id,
            [(p.part_number, p.etag) for p in parts],
        )
        await self._store.update(session.model_copy(update={
            "status": UploadStatus.COMPLETED,
            "updated_at": utcnow(),
        }))

        size = sum(p.size for p in parts)
        digest = session.checksum or etag_checksum(p.etag for p in parts)
        logger.info(f"[Upload] 会话完成: id={session_id}, parts={len(parts)}, size={size}")
        return UploadResult(
            workspace=session.workspace,
            bucket=session.bucket,
            object_key=session.object_key,
            checksum=digest,
            size=size,
            mime_type=session.mime_type,
        )

    async def abort(self, session_id: str) -> None:
        session = await self._require_open(session_id)
        await self._storage.abort_multipart_upload(session.bucket, session.object_key, session.upload_id)
        await self._store.update(session.model_copy(update={
            "status": UploadStatus.ABORTED,
            "updated_at": utcnow(),
        }))
        logger.info(f"[Upload] 会话取消: id={session_id}")

    async def fail(self, session_id: str, reason: str = "") -> None:
        session = await self._require_open(session_id)
        await self._store.update(session.model_copy(update={
            "status": UploadStatus.FAILED,
            "updated_at": utcnow(),
        }))
        logger.warning(f"[Upload] 会话失败: id={session_id}, reason={reason}")

    async def get(self, session_id: str) -> UploadSession:
        session = await self._store.get(session_id)
        if session is None:
            raise NotFound(f"上传会话不存在: {session_id}", session_id=session_id)
        return session

    async def _require_open(self, session_id: str) -> UploadSession:
        session = await self.get(session_id)
        if session.status.is_terminal:
            raise UploadStateError(
                f"上传会话已结束: {session_id} ({session.status.value})",
                session_id=session_id,
                workspace=session.workspace,
                object_key=session.object_key,
            )
        return session
