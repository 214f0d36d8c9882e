"""
断点续传会话存储

- UploadSessionStore: create / get / update / put_part
- InMemoryUploadSessionStore: 测试与单进程使用
- PostgresUploadSessionStore: upload_sessions + upload_parts 两张表 (asyncpg)

put_part 以 part_number 为键做 upsert，并在同一临界区内重算 size、把状态置为 uploading，
因此同一会话不同分片的并发上传不会互相覆盖；同一分片并发重传则后写者生效。
已结束 (completed / aborted / failed) 的会话拒绝新分片。
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol

import asyncpg

from infra.postgres.service import connect

from .errors import NotFound, UploadStateError
from .models import UploadPart, UploadSession, UploadStatus, utcnow


class UploadSessionStore(Protocol):

    async def create(self, session: UploadSession) -> None: ...

    async def get(self, session_id: str) -> Optional[UploadSession]: ...

    async def update(self, session: UploadSession) -> None: ...

    async def put_part(self, session_id: str, part: UploadPart) -> UploadSession: ...


class InMemoryUploadSessionStore:

    def __init__(self) -> None:
        self._sessions: dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: UploadSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session

    async def get(self, session_id: str) -> Optional[UploadSession]:
        return self._sessions.get(session_id)

    async def update(self, session: UploadSession) -> None:
        async with self._lock:
            current = self._sessions.get(session.id)
            # 分片列表以存储为准，避免覆盖并发写入的分片
            if current is not None:
                session = session.model_copy(update={"parts": current.parts, "size": current.size})
            self._sessions[session.id] = session

    async def put_part(self, session_id: str, part: UploadPart) -> UploadSession:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFound(f"上传会话不存在: {session_id}", session_id=session_id)
            _reject_terminal(session_id, current.status)
            updated = current.with_part(part)
            self._sessions[session_id] = updated
            return updated


def _reject_terminal(session_id: str, status: UploadStatus) -> None:
    # 与 complete / abort 竞争时，迟到的分片不能把会话拉回 uploading
    if status.is_terminal:
        raise UploadStateError(f"上传会话已结束: {session_id} ({status.value})", session_id=session_id)


# ---------------------------------------------------------------------------
# PostgreSQL 实现
# ---------------------------------------------------------------------------

_SESSION_COLUMNS = """
    id, upload_id, workspace, bucket, object_key, mime_type,
    part_size, checksum, status, size, created_at, updated_at
"""


def _row_to_session(row: asyncpg.Record, parts: list[asyncpg.Record]) -> UploadSession:
    d = dict(row)
    d["status"] = UploadStatus(d["status"])
    d["parts"] = [
        UploadPart(part_number=p["part_number"], size=p["size"], etag=p["etag"], checksum=p["checksum"])
        for p in parts
    ]
    return UploadSession(**d)


class PostgresUploadSessionStore:

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn

    async def _conn(self) -> asyncpg.Connection:
        return await connect(self._dsn)

    async def create(self, session: UploadSession) -> None:
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO upload_sessions (
                    id, upload_id, workspace, bucket, object_key, mime_type,
                    part_size, checksum, status, size, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                session.id, session.upload_id, session.workspace, session.bucket,
                session.object_key, session.mime_type, session.part_size,
                session.checksum, session.status.value, session.size,
                session.created_at, session.updated_at,
            )
        finally:
            await conn.close()

    async def get(self, session_id: str) -> Optional[UploadSession]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM upload_sessions WHERE id = $1", session_id,
            )
            if row is None:
                return None
            parts = await conn.fetch(
                """
                SELECT part_number, size, etag, checksum
                FROM upload_parts WHERE session_id = $1
                ORDER BY part_number
                """,
                session_id,
            )
            return _row_to_session(row, parts)
        finally:
            await conn.close()

    async def update(self, session: UploadSession) -> None:
        """只更新会话级字段，分片由 put_part 维护"""
        conn = await self._conn()
        try:
            await conn.execute(
                """
                UPDATE upload_sessions
                SET status = $2, checksum = $3, updated_at = $4
                WHERE id = $1
                """,
                session.id, session.status.value, session.checksum, session.updated_at,
            )
        finally:
            await conn.close()

    async def put_part(self, session_id: str, part: UploadPart) -> UploadSession:
        conn = await self._conn()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status FROM upload_sessions WHERE id = $1 FOR UPDATE", session_id,
                )
                if row is None:
                    raise NotFound(f"上传会话不存在: {session_id}", session_id=session_id)
                _reject_terminal(session_id, UploadStatus(row["status"]))
                await conn.execute(
                    """
                    INSERT INTO upload_parts (session_id, part_number, size, etag, checksum)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (session_id, part_number)
                    DO UPDATE SET size = EXCLUDED.size, etag = EXCLUDED.etag, checksum = EXCLUDED.checksum
                    """,
                    session_id, part.part_number, part.size, part.etag, part.checksum,
                )
                row = await conn.fetchrow(
                    f"""
                    UPDATE upload_sessions
                    SET size = (SELECT COALESCE(SUM(size), 0) FROM upload_parts WHERE session_id = $1),
                        status = $2,
                        updated_at = $3
                    WHERE id = $1
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    session_id, UploadStatus.UPLOADING.value, utcnow(),
                )
                parts = await conn.fetch(
                    """
                    SELECT part_number, size, etag, checksum
                    FROM upload_parts WHERE session_id = $1
                    ORDER BY part_number
                    """,
                    session_id,
                )
            return _row_to_session(row, parts)
        finally:
            await conn.close()
