"""
知识库错误分类

- PolicyViolation: 上传前策略拦截（超限 / 类型 / 限流 / 扫描），不触达存储，必定审计
- NotFound: 会话 / 文档不存在，直接返回给调用方，不重试
- UploadStateError: 对已终结的上传会话继续操作
- TransientStorageError: 对象存储 / 网络抖动，由任务队列按策略重试
- ConfigurationError: 配置错误（如切块步长非正），立即失败，不重试

解析降级不是错误：解析器返回占位文本，入库照常进行。
"""
from __future__ import annotations

from typing import Any


class KnowledgeError(Exception):
    """知识库异常基类，context 用于死信排查 (workspace / object_key / job_id)"""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class PolicyViolation(KnowledgeError):
    SIZE_EXCEEDED = "size_exceeded"
    MIME_NOT_ALLOWED = "mime_not_allowed"
    RATE_LIMITED = "rate_limited"
    SCAN_FAILED = "scan_failed"

    def __init__(self, reason: str, detail: str = "", **context: Any) -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason, **context)
        self.reason = reason
        self.detail = detail


class NotFound(KnowledgeError):
    pass


class UploadStateError(KnowledgeError):
    pass


class TransientStorageError(KnowledgeError):
    pass


class ConfigurationError(KnowledgeError):
    pass
