"""
解析器单元测试
"""
from __future__ import annotations

import io
import json
import os
import sys

# 确保 backend 根目录在 path 中
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from knowledge.parsers import (
    DOCX_MIME,
    FileKind,
    extract_metadata,
    file_kind_from_name,
    parse_document,
    parse_to_text,
)


def _meta(name: str, mime_type: str | None = None, size: int = 0):
    return extract_metadata(name, size, mime_type)


def test_file_kind_by_extension() -> None:
    assert file_kind_from_name("Report.PDF") == FileKind.PDF
    assert file_kind_from_name("page.htm") == FileKind.HTML
    assert file_kind_from_name("page.html") == FileKind.HTML
    assert file_kind_from_name("spec.docx") == FileKind.DOCX
    assert file_kind_from_name("readme.md") == FileKind.MARKDOWN
    assert file_kind_from_name("notes.markdown") == FileKind.MARKDOWN
    assert file_kind_from_name("data.json") == FileKind.JSON
    assert file_kind_from_name("notes.txt") == FileKind.TXT
    assert file_kind_from_name("archive.zip") == FileKind.UNKNOWN


def test_file_kind_by_mime_and_precedence() -> None:
    assert file_kind_from_name("blob", "application/pdf") == FileKind.PDF
    assert file_kind_from_name("blob", DOCX_MIME) == FileKind.DOCX
    assert file_kind_from_name("blob", "application/json") == FileKind.JSON
    assert file_kind_from_name("blob", "text/csv") == FileKind.TXT
    # html 判定先于 markdown
    assert file_kind_from_name("readme.md", "text/html") == FileKind.HTML
    # markdown 判定先于 text/*
    assert file_kind_from_name("readme.md", "text/plain") == FileKind.MARKDOWN


def test_extract_metadata() -> None:
    meta = extract_metadata("a.txt", 12, "text/plain", last_modified=1_700_000_000_000, checksum="abc")
    assert meta.kind == FileKind.TXT
    assert meta.size == 12
    assert meta.checksum == "abc"
    assert meta.last_modified is not None


def test_json_is_pretty_printed() -> None:
    text = parse_to_text(b'{"a":1,"b":[1,2]}', _meta("data.json"))
    assert text == json.dumps({"a": 1, "b": [1, 2]}, indent=2)


def test_html_uses_body_text() -> None:
    html = b"<html><head><title>Ignored</title></head><body><h1>Hello</h1><p>World</p></body></html>"
    text = parse_to_text(html, _meta("page.html"))
    assert "Hello" in text
    assert "World" in text
    assert "Ignored" not in text


def test_plain_text_decoding() -> None:
    assert parse_to_text("héllo".encode("utf-8"), _meta("a.txt")) == "héllo"
    assert parse_to_text("中文内容".encode("gbk"), _meta("a.txt")) == "中文内容"
    assert parse_to_text(b"# Title", _meta("a.md")) == "# Title"
    assert parse_to_text(b"raw", _meta("a.bin")) == "raw"


def test_unparseable_pdf_degrades_to_sentinel() -> None:
    text = parse_to_text(b"definitely not a pdf", _meta("broken.pdf"))
    assert text == "Unable to parse PDF in this environment."


def test_unparseable_docx_degrades_to_sentinel() -> None:
    text = parse_to_text(b"not a zip archive", _meta("broken.docx"))
    assert text == "Unable to parse DOCX in this environment."


def test_docx_paragraphs_and_tables() -> None:
    from docx import Document

    doc = Document()
    doc.add_heading("季度报告", level=1)
    doc.add_paragraph("收入同比增长。")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Q1"
    table.rows[0].cells[1].text = "100"
    buf = io.BytesIO()
    doc.save(buf)

    text = parse_to_text(buf.getvalue(), _meta("report.docx"))
    assert "季度报告" in text
    assert "收入同比增长。" in text
    assert "Q1\t100" in text


def test_parse_document_chunks_with_source() -> None:
    data = ("x" * 4000).encode("utf-8")
    document, chunks = parse_document(data, "big.txt", mime_type="text/plain")
    assert document.metadata.kind == FileKind.TXT
    assert document.metadata.size == 4000
    assert len(document.text) == 4000
    assert len(chunks) == 3
    assert all(c.metadata["source"] == "big.txt" for c in chunks)


def test_parse_document_respects_chunk_options() -> None:
    _, chunks = parse_document(b"abcdefghij", "a.txt", options={"max_characters": 4, "overlap": 1})
    assert [c.content for c in chunks] == ["abcd", "defg", "ghij"]
