"""
审计事件

每条事件序列化为单行 JSON 写入 knowledge.audit logger，
由部署侧的日志采集统一收走；emit 同时返回事件 dict 便于测试断言。
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

UPLOAD_ACCEPTED = "upload.accepted"
UPLOAD_REJECTED = "upload.rejected"
INGESTION_STARTED = "ingestion.started"
INGESTION_FINISHED = "ingestion.finished"


class AuditLogger:

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        sink: Optional[Callable[[dict[str, Any]], None]] = None,
    ) -> None:
        self._logger = logger or logging.getLogger("knowledge.audit")
        self._sink = sink

    def emit(self, event: str, **fields: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **{k: v for k, v in fields.items() if v is not None},
        }
        self._logger.info(json.dumps(payload, ensure_ascii=False, default=str))
        if self._sink is not None:
            self._sink(payload)
        return payload


class RecordingAuditLogger(AuditLogger):
    """测试用：保留全部已发出的事件"""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        super().__init__(sink=self.events.append)

    def names(self) -> list[str]:
        return [e["event"] for e in self.events]
