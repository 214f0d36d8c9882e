"""
定长滑窗切块

按字符数切分解析后的全文，相邻块之间保留 overlap 个字符的重叠，
保证跨块边界的句子在检索时至少完整出现在一个块中。

  start = 0, M-O, 2(M-O), ...
  end   = min(start + M, len(text))
  到达文本末尾即停止，因此空文本不产生任何块。
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ConfigurationError
from .utils import text_checksum

DEFAULT_MAX_CHARACTERS = 2000
DEFAULT_OVERLAP = 200
PENDING_DOCUMENT_ID = "pending"


@dataclass
class ChunkRecord:
    """切片数据对象，document_id 在入库前为 pending"""
    id: str
    document_id: str
    content: str
    index: int
    token_estimate: int
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def range(self) -> tuple[int, int]:
        start, end = self.metadata.get("range", (0, 0))
        return start, end


def estimate_tokens(text: str) -> int:
    """粗略 token 估算: 4 字符 / token，向上取整"""
    return math.ceil(len(text) / 4)


def chunk_text(
    text: str,
    *,
    source: Optional[str] = None,
    max_characters: int = DEFAULT_MAX_CHARACTERS,
    overlap: int = DEFAULT_OVERLAP,
    document_id: str = PENDING_DOCUMENT_ID,
) -> list[ChunkRecord]:
    if max_characters <= 0:
        raise ConfigurationError(f"max_characters 必须为正数: {max_characters}")
    step = max_characters - overlap
    if step <= 0:
        raise ConfigurationError(
            f"切块步长必须为正数: max_characters={max_characters}, overlap={overlap}",
        )

    chunks: list[ChunkRecord] = []
    length = len(text)
    start = 0
    while start < length:
        end = min(start + max_characters, length)
        content = text[start:end]
        chunks.append(ChunkRecord(
            id=str(uuid.uuid4()),
            document_id=document_id,
            content=content,
            index=len(chunks),
            token_estimate=estimate_tokens(content),
            content_hash=text_checksum(content),
            metadata={"source": source, "range": [start, end]},
        ))
        if end == length:
            break
        start += step
    return chunks
