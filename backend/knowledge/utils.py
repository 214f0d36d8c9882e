"""知识库通用小工具"""
from __future__ import annotations

import hashlib
from typing import Iterable


def checksum(data: bytes, algorithm: str = "sha256") -> str:
    """内容摘要 (hex)，用于文件去重与 embedding 缓存键"""
    return hashlib.new(algorithm, data).hexdigest()


def text_checksum(text: str) -> str:
    return checksum(text.encode("utf-8"))


def etag_checksum(etags: Iterable[str]) -> str:
    """未声明校验和时，以分片 etag 依序拼接后的 sha256 作为整体校验和"""
    return checksum("".join(etags).encode("utf-8"))
