"""
S3 兼容对象存储服务（boto3）

boto3 为同步 SDK，所有调用经 asyncio.to_thread 移出事件循环。
错误映射:
  NoSuchKey / NoSuchUpload / NoSuchBucket → NotFound
  其它 ClientError / 网络异常             → TransientStorageError (由任务队列重试)
"""
import asyncio
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import StorageSettings
from knowledge.errors import NotFound, TransientStorageError
from knowledge.storage import StoredObject

logger = logging.getLogger("knowledge.s3")

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchUpload", "NoSuchBucket", "404"}
_BUCKET_EXISTS_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class S3ObjectStorage:

    def __init__(self, settings: StorageSettings, acl: str = "private", client=None) -> None:
        self.settings = settings
        self._acl = acl
        self._client = client or boto3.client(
            "s3",
            endpoint_url=settings.endpoint,
            region_name=settings.region,
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            config=Config(
                connect_timeout=settings.timeout_seconds,
                read_timeout=settings.timeout_seconds,
                s3={"addressing_style": "path" if settings.force_path_style else "auto"},
                retries={"max_attempts": 2},
            ),
        )

    async def _call(self, op: str, **kwargs):
        method = getattr(self._client, op)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as e:
            code = _error_code(e)
            context = {"bucket": kwargs.get("Bucket"), "object_key": kwargs.get("Key")}
            if code in _NOT_FOUND_CODES:
                raise NotFound(f"S3 {op} 对象不存在: {code}", **context) from e
            logger.warning(f"[KB] S3 {op} 失败: code={code}, err={e}")
            raise TransientStorageError(f"S3 {op} 失败: {code or e}", **context) from e
        except BotoCoreError as e:
            logger.warning(f"[KB] S3 {op} 连接异常: {e}")
            raise TransientStorageError(
                f"S3 {op} 连接异常: {e}", bucket=kwargs.get("Bucket"), object_key=kwargs.get("Key"),
            ) from e

    async def ensure_bucket(self, bucket: str) -> None:
        kwargs = {"Bucket": bucket}
        # us-east-1 不接受 LocationConstraint
        if self.settings.region and self.settings.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.settings.region}
        try:
            await asyncio.to_thread(self._client.create_bucket, **kwargs)
            logger.info(f"[KB] 创建 bucket: {bucket}")
        except ClientError as e:
            if _error_code(e) not in _BUCKET_EXISTS_CODES:
                raise TransientStorageError(f"创建 bucket 失败: {bucket}: {e}", bucket=bucket) from e
        await self._call("put_bucket_acl", Bucket=bucket, ACL=self._acl)

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        mime_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        kwargs = {"Bucket": bucket, "Key": key, "Body": data}
        if mime_type:
            kwargs["ContentType"] = mime_type
        if metadata:
            kwargs["Metadata"] = metadata
        await self._call("put_object", **kwargs)

    async def get_object(self, bucket: str, key: str) -> StoredObject:
        resp = await self._call("get_object", Bucket=bucket, Key=key)
        body = resp["Body"]
        try:
            data = await asyncio.to_thread(body.read)
        finally:
            body.close()
        return StoredObject(data=data, mime_type=resp.get("ContentType"), metadata=resp.get("Metadata") or {})

    async def delete_object(self, bucket: str, key: str) -> None:
        await self._call("delete_object", Bucket=bucket, Key=key)

    async def create_multipart_upload(self, bucket: str, key: str, mime_type: Optional[str] = None) -> str:
        kwargs = {"Bucket": bucket, "Key": key}
        if mime_type:
            kwargs["ContentType"] = mime_type
        resp = await self._call("create_multipart_upload", **kwargs)
        return resp.get("UploadId", "")

    async def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        resp = await self._call(
            "upload_part",
            Bucket=bucket, Key=key, UploadId=upload_id, PartNumber=part_number, Body=data,
        )
        return resp.get("ETag", "")

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: list[tuple[int, str]],
    ) -> None:
        await self._call(
            "complete_multipart_upload",
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"ETag": etag, "PartNumber": n} for n, etag in parts]},
        )

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        await self._call("abort_multipart_upload", Bucket=bucket, Key=key, UploadId=upload_id)
