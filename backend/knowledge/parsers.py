"""
知识库多格式文档解析器

支持: PDF (pdfplumber), Word (python-docx), HTML (BeautifulSoup), JSON, Markdown, TXT。
统一输出纯文本，交给 chunking.chunk_text 切块。

解析后端缺失或解析异常时不抛错，返回占位文本
"Unable to parse {KIND} in this environment."，入库流程照常进行。
"""
from __future__ import annotations

import io
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from .chunking import DEFAULT_MAX_CHARACTERS, DEFAULT_OVERLAP, ChunkRecord, chunk_text

logger = logging.getLogger("knowledge.parsers")

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class FileKind(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    HTML = "html"
    JSON = "json"
    MARKDOWN = "markdown"
    TXT = "txt"
    UNKNOWN = "unknown"


class FileMetadata(BaseModel):
    name: str
    mime_type: Optional[str] = None
    size: int
    last_modified: Optional[datetime] = None
    checksum: Optional[str] = None
    kind: FileKind


class ParsedDocument(BaseModel):
    text: str
    metadata: FileMetadata


def file_kind_from_name(name: str, mime_type: Optional[str] = None) -> FileKind:
    """扩展名与 MIME 任一命中即判定，按 pdf → html → docx → markdown → json → txt 的顺序"""
    lower = (name or "").lower()
    if lower.endswith(".pdf") or mime_type == "application/pdf":
        return FileKind.PDF
    if lower.endswith((".html", ".htm")) or mime_type == "text/html":
        return FileKind.HTML
    if lower.endswith(".docx") or mime_type == DOCX_MIME:
        return FileKind.DOCX
    if lower.endswith((".md", ".markdown")):
        return FileKind.MARKDOWN
    if lower.endswith(".json") or mime_type == "application/json":
        return FileKind.JSON
    if lower.endswith(".txt") or (mime_type or "").startswith("text/"):
        return FileKind.TXT
    return FileKind.UNKNOWN


def extract_metadata(
    name: str,
    size: int,
    mime_type: Optional[str] = None,
    last_modified: Optional[float] = None,
    checksum: Optional[str] = None,
) -> FileMetadata:
    """last_modified 为毫秒时间戳"""
    return FileMetadata(
        name=name,
        mime_type=mime_type,
        size=size,
        last_modified=datetime.fromtimestamp(last_modified / 1000) if last_modified else None,
        checksum=checksum,
        kind=file_kind_from_name(name, mime_type),
    )


def unavailable_text(kind: FileKind) -> str:
    return f"Unable to parse {kind.value.upper()} in this environment."


# ---------------------------------------------------------------------------
# 各格式解析器 (同步)
# ---------------------------------------------------------------------------

def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        try:
            return data.decode("gbk")
        except UnicodeDecodeError:
            return data.decode("utf-8", errors="replace")


def _parse_pdf(data: bytes) -> str:
    import pdfplumber

    pages: list[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            text = page.extract_text()
            if text and text.strip():
                pages.append(text.strip())
    return "\n\n".join(pages)


def _parse_docx(data: bytes) -> str:
    from docx import Document

    doc = Document(io.BytesIO(data))
    parts = [p.text for p in doc.paragraphs if p.text.strip()]
    # 表格按行拼接，单元格用 tab 分隔
    for table in doc.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells]
            if any(cells):
                parts.append("\t".join(cells))
    return "\n".join(parts)


def _parse_html(data: bytes) -> str:
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(_decode_text(data), "html.parser")
    body = soup.body
    if body is None:
        return ""
    return body.get_text()


def _parse_json(data: bytes) -> str:
    return json.dumps(json.loads(_decode_text(data)), indent=2, ensure_ascii=False)


def _parse_plain(data: bytes) -> str:
    return _decode_text(data)


# 每种 FileKind 一个处理函数
_HANDLERS = {
    FileKind.PDF: _parse_pdf,
    FileKind.DOCX: _parse_docx,
    FileKind.HTML: _parse_html,
    FileKind.JSON: _parse_json,
    FileKind.MARKDOWN: _parse_plain,
    FileKind.TXT: _parse_plain,
    FileKind.UNKNOWN: _parse_plain,
}

# 依赖第三方解析后端的类型，失败时降级为占位文本
_BACKEND_KINDS = frozenset({FileKind.PDF, FileKind.DOCX, FileKind.HTML})


def parse_to_text(data: bytes, metadata: FileMetadata) -> str:
    """
    根据 metadata.kind 选择解析器。

    PDF / DOCX / HTML 后端缺失或异常时降级为占位文本；
    JSON 非法时原样抛出 (数据本身损坏，重试也无意义)。
    """
    kind = metadata.kind
    handler = _HANDLERS.get(kind, _parse_plain)
    if kind not in _BACKEND_KINDS:
        return handler(data)
    try:
        return handler(data)
    except Exception as e:
        logger.warning(f"[KB] {kind.value} 解析不可用，降级为占位文本: name={metadata.name}, err={e}")
        return unavailable_text(kind)


def parse_document(
    data: bytes,
    name: str,
    size: Optional[int] = None,
    mime_type: Optional[str] = None,
    options: Optional[dict[str, Any]] = None,
) -> tuple[ParsedDocument, list[ChunkRecord]]:
    """解析 + 切块，options 支持 max_characters / overlap / checksum / last_modified"""
    options = options or {}
    metadata = extract_metadata(
        name,
        len(data) if size is None else size,
        mime_type,
        last_modified=options.get("last_modified"),
        checksum=options.get("checksum"),
    )
    text = parse_to_text(data, metadata)
    chunks = chunk_text(
        text,
        source=metadata.name,
        max_characters=options.get("max_characters", DEFAULT_MAX_CHARACTERS),
        overlap=options.get("overlap", DEFAULT_OVERLAP),
    )
    return ParsedDocument(text=text, metadata=metadata), chunks
