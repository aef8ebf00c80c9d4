from __future__ import annotations

import logging
from enum import Enum
from typing import List, Tuple
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from studyforge.core.errors import PartCountMismatchError
from studyforge.models import ChunkPart

logger = logging.getLogger(__name__)


# 单个 (deck_id, chunk_index) 的 part 状态
class PartState(str, Enum):
    RECEIVING = "RECEIVING"
    READY = "READY"
    CONSUMED = "CONSUMED"
    INCONSISTENT = "INCONSISTENT"


def classify(count: int, total_parts: int) -> PartState:
    if count > total_parts:
        return PartState.INCONSISTENT
    if count == total_parts:
        return PartState.READY
    return PartState.RECEIVING


# 追加一行 part（只追加，不覆盖；重复投递会体现在计数上）
def put_part(
    db: Session,
    deck_id: str,
    chunk_index: int,
    part_index: int,
    total_parts: int,
    data: str,
) -> None:
    db.add(
        ChunkPart(
            id=uuid4().hex,
            deck_id=deck_id,
            chunk_index=chunk_index,
            part_index=part_index,
            total_parts=total_parts,
            data=data,
        )
    )
    db.commit()


def count_parts(db: Session, deck_id: str, chunk_index: int) -> int:
    stmt = select(func.count(ChunkPart.id)).where(
        ChunkPart.deck_id == deck_id, ChunkPart.chunk_index == chunk_index
    )
    return int(db.execute(stmt).scalar_one())


# 在同一事务内重新读取、校验、删除并按 partIndex 返回全部 part
# 返回 None 表示已被并发的另一个 worker 取走
def take_all(db: Session, deck_id: str, chunk_index: int, expected_total: int) -> List[Tuple[int, str]] | None:
    rows = (
        db.query(ChunkPart)
        .filter(ChunkPart.deck_id == deck_id, ChunkPart.chunk_index == chunk_index)
        .order_by(ChunkPart.part_index)
        .with_for_update()
        .all()
    )
    if not rows:
        db.rollback()
        return None

    # 数量、索引连续性与声明的 totalParts 必须全部一致，否则说明有重复投递
    indexes = [row.part_index for row in rows]
    declared = {row.total_parts for row in rows}
    if len(rows) != expected_total or indexes != list(range(expected_total)) or declared != {expected_total}:
        db.rollback()
        raise PartCountMismatchError(
            f"Chunk {chunk_index + 1} part count mismatch: expected {expected_total}, found {len(rows)}",
            expected=expected_total,
            actual=len(rows),
            deck_id=deck_id,
        )

    parts = [(row.part_index, row.data) for row in rows]
    db.execute(
        delete(ChunkPart)
        .where(ChunkPart.id.in_([row.id for row in rows]))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return parts


# 清理残留 part；chunk_index 为空时清理整个 deck
def discard_parts(db: Session, deck_id: str, chunk_index: int | None = None) -> int:
    stmt = delete(ChunkPart).where(ChunkPart.deck_id == deck_id)
    if chunk_index is not None:
        stmt = stmt.where(ChunkPart.chunk_index == chunk_index)
    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("Discarded %s stray parts for deck %s chunk %s", removed, deck_id, chunk_index)
    return removed
