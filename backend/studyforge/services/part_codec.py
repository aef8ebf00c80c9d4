from __future__ import annotations

import base64
import binascii
import math
from typing import Iterable, List, Tuple

from studyforge.core.errors import PartDecodeError


# chunk 字节 -> 可放进 JSON 消息体的字符串
def encode_chunk(chunk: bytes) -> str:
    return base64.b64encode(chunk).decode("ascii")


def decode_chunk(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise PartDecodeError(f"Chunk payload could not be decoded: {exc}") from exc


def count_parts(encoded_length: int, ceiling: int) -> int:
    if ceiling < 1:
        raise ValueError("part size ceiling must be >= 1")
    return max(1, math.ceil(encoded_length / ceiling))


# 按字节上限切分为 part（base64 为 ASCII，字符数即字节数）
def split_parts(encoded: str, ceiling: int) -> List[str]:
    total = count_parts(len(encoded), ceiling)
    return [encoded[idx * ceiling : (idx + 1) * ceiling] for idx in range(total)]


# 只按 partIndex 升序拼接，绝不按到达顺序
def join_parts(parts: Iterable[Tuple[int, str]]) -> str:
    ordered = sorted(parts, key=lambda item: item[0])
    indexes = [index for index, _ in ordered]
    if indexes != list(range(len(ordered))):
        raise PartDecodeError(f"Chunk parts are not contiguous: got indexes {indexes}")
    return "".join(data for _, data in ordered)
