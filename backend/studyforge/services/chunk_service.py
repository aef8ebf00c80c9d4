from __future__ import annotations

import math
from typing import List, Tuple


# 解析页码范围：1 起始、闭区间，超出文档的 end 截断到末页；返回 0 起始的 [start, end)
def resolve_page_window(total_pages: int, start: int | None = None, end: int | None = None) -> Tuple[int, int]:
    if total_pages <= 0:
        return 0, 0
    first = 1 if start is None else start
    last = total_pages if end is None else min(end, total_pages)
    if first < 1:
        raise ValueError(f"page range start must be >= 1, got {first}")
    if first > total_pages:
        raise ValueError(f"page range start {first} is beyond the last page ({total_pages})")
    if last < first:
        raise ValueError(f"page range end {last} is before start {first}")
    return first - 1, last


# 将页窗口按固定页数切分为连续的页组（最后一组可能不足）
def plan_page_groups(window_start: int, window_end: int, pages_per_chunk: int) -> List[Tuple[int, int]]:
    if pages_per_chunk <= 0:
        raise ValueError("pages_per_chunk must be positive")
    groups: List[Tuple[int, int]] = []
    for first in range(window_start, window_end, pages_per_chunk):
        groups.append((first, min(first + pages_per_chunk, window_end)))
    return groups


def expected_chunk_count(page_count: int, pages_per_chunk: int) -> int:
    return math.ceil(page_count / pages_per_chunk) if page_count > 0 else 0
