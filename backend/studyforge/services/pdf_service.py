from __future__ import annotations

import logging
from typing import List

import fitz
import pymupdf4llm

from studyforge.core.errors import ChunkingError
from studyforge.core.schemas import PageRange
from studyforge.services.chunk_service import plan_page_groups, resolve_page_window

logger = logging.getLogger(__name__)


def _open_pdf(data: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise ChunkingError(f"PDF processing failed: unable to open document ({exc})") from exc


def count_pages(data: bytes) -> int:
    with _open_pdf(data) as doc:
        return doc.page_count


# 将 PDF 按固定页数切分为多个独立 PDF（任意一页失败则整个任务失败）
def split_pdf_into_chunks(data: bytes, page_range: PageRange | None, pages_per_chunk: int) -> List[bytes]:
    with _open_pdf(data) as source:
        try:
            window_start, window_end = resolve_page_window(
                source.page_count,
                page_range.start if page_range else None,
                page_range.end if page_range else None,
            )
        except ValueError as exc:
            raise ChunkingError(f"PDF processing failed: {exc}") from exc

        chunks: List[bytes] = []
        for first, last in plan_page_groups(window_start, window_end, pages_per_chunk):
            try:
                with fitz.open() as chunk_doc:
                    chunk_doc.insert_pdf(source, from_page=first, to_page=last - 1)
                    chunks.append(chunk_doc.tobytes(garbage=3, deflate=True))
            except Exception as exc:
                logger.error("Page extraction failed at page %s: %s", first + 1, exc)
                raise ChunkingError(f"PDF processing failed at page {first + 1}", page=first + 1) from exc

    logger.info(
        "Split pages %s-%s into %s chunks of up to %s pages",
        window_start + 1,
        window_end,
        len(chunks),
        pages_per_chunk,
    )
    return chunks


# 提取 chunk 的 Markdown 文本（离线占位结果使用）
def chunk_to_markdown(chunk: bytes) -> str:
    with _open_pdf(chunk) as doc:
        return pymupdf4llm.to_markdown(doc)
