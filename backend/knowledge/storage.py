"""
对象存储边界

- ObjectStorage: 知识库依赖的最小 S3 能力集 (单次上传 / 下载 / 删除 / 分片上传)
- InMemoryObjectStorage: 测试替身，语义与 S3 一致
- upload_buffer / download_object: 单次上传与下载的便捷函数

生产实现见 infra.s3.service.S3ObjectStorage。
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .errors import NotFound
from .models import ObjectLocator, UploadResult
from .utils import checksum


def workspace_bucket_name(prefix: str, workspace_slug: str) -> str:
    return f"{prefix}-{workspace_slug}"


@dataclass
class StoredObject:
    data: bytes
    mime_type: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


class ObjectStorage(Protocol):

    async def ensure_bucket(self, bucket: str) -> None: ...

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        mime_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> None: ...

    async def get_object(self, bucket: str, key: str) -> StoredObject: ...

    async def delete_object(self, bucket: str, key: str) -> None: ...

    async def create_multipart_upload(self, bucket: str, key: str, mime_type: Optional[str] = None) -> str: ...

    async def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes) -> str: ...

    async def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[tuple[int, str]],
    ) -> None: ...

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None: ...


@dataclass
class _PendingMultipart:
    bucket: str
    key: str
    mime_type: Optional[str]
    parts: dict[int, tuple[str, bytes]] = field(default_factory=dict)


class InMemoryObjectStorage:
    """进程内对象存储，同一 part_number 重传覆盖旧数据，complete 按给定顺序拼接"""

    def __init__(self) -> None:
        self.buckets: set[str] = set()
        self.objects: dict[tuple[str, str], StoredObject] = {}
        self._uploads: dict[str, _PendingMultipart] = {}
        self._lock = asyncio.Lock()
        self.calls: list[str] = []

    async def ensure_bucket(self, bucket: str) -> None:
        self.calls.append("ensure_bucket")
        self.buckets.add(bucket)

    async def put_object(self, bucket, key, data, mime_type=None, metadata=None) -> None:
        self.calls.append("put_object")
        self.buckets.add(bucket)
        self.objects[(bucket, key)] = StoredObject(bytes(data), mime_type, dict(metadata or {}))

    async def get_object(self, bucket: str, key: str) -> StoredObject:
        self.calls.append("get_object")
        obj = self.objects.get((bucket, key))
        if obj is None:
            raise NotFound(f"对象不存在: {bucket}/{key}", bucket=bucket, object_key=key)
        return obj

    async def delete_object(self, bucket: str, key: str) -> None:
        self.calls.append("delete_object")
        self.objects.pop((bucket, key), None)

    async def create_multipart_upload(self, bucket, key, mime_type=None) -> str:
        self.calls.append("create_multipart_upload")
        upload_id = uuid.uuid4().hex
        async with self._lock:
            self._uploads[upload_id] = _PendingMultipart(bucket, key, mime_type)
        return upload_id

    async def upload_part(self, bucket, key, upload_id, part_number, data) -> str:
        self.calls.append("upload_part")
        async with self._lock:
            pending = self._require(upload_id)
            etag = f'"{checksum(data, "md5")}"'
            pending.parts[part_number] = (etag, bytes(data))
        return etag

    async def complete_multipart_upload(self, bucket, key, upload_id, parts) -> None:
        self.calls.append("complete_multipart_upload")
        async with self._lock:
            pending = self._require(upload_id)
            body = bytearray()
            for part_number, etag in parts:
                stored = pending.parts.get(part_number)
                if stored is None or stored[0] != etag:
                    raise NotFound(f"分片不存在或 etag 不匹配: part={part_number}", upload_id=upload_id)
                body.extend(stored[1])
            self.objects[(pending.bucket, pending.key)] = StoredObject(bytes(body), pending.mime_type)
            del self._uploads[upload_id]

    async def abort_multipart_upload(self, bucket, key, upload_id) -> None:
        self.calls.append("abort_multipart_upload")
        async with self._lock:
            self._require(upload_id)
            del self._uploads[upload_id]

    def _require(self, upload_id: str) -> _PendingMultipart:
        pending = self._uploads.get(upload_id)
        if pending is None:
            raise NotFound(f"分片上传不存在: {upload_id}", upload_id=upload_id)
        return pending


async def upload_buffer(
    storage: ObjectStorage,
    data: bytes,
    locator: ObjectLocator,
    mime_type: Optional[str] = None,
    metadata: Optional[dict[str, str]] = None,
) -> UploadResult:
    await storage.put_object(locator.bucket, locator.object_key, data, mime_type, metadata)
    return UploadResult(
        workspace=locator.workspace,
        bucket=locator.bucket,
        object_key=locator.object_key,
        checksum=checksum(data),
        size=len(data),
        mime_type=mime_type,
    )


async def download_object(storage: ObjectStorage, locator: ObjectLocator) -> StoredObject:
    return await storage.get_object(locator.bucket, locator.object_key)
