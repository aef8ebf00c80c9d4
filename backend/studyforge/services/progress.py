from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from studyforge.core.schemas import StudyMaterialStatus
from studyforge.core.stages import (
    ACCEPTING_STAGES,
    PROCESSING_FLOOR,
    PROCESSING_SPAN,
    TERMINAL_STAGES,
    ProcessingStage,
    stage_entry_progress,
)
from studyforge.models import Deck, ProcessedChunk, StudyMaterial

logger = logging.getLogger(__name__)

_ACCEPTING = sorted(ACCEPTING_STAGES)
_TERMINAL = sorted(TERMINAL_STAGES)


# 原子自增后从数据库读回的计数快照
@dataclass(frozen=True)
class CounterSnapshot:
    processed: int
    failed: int
    total: int
    stage: str

    @property
    def settled(self) -> int:
        return self.processed + self.failed

    @property
    def is_settled(self) -> bool:
        return self.total > 0 and self.settled >= self.total


def processing_progress(processed: int, total: int) -> int:
    if total <= 0:
        return PROCESSING_FLOOR
    return PROCESSING_FLOOR + (PROCESSING_SPAN * min(processed, total)) // total


def _run_guard(deck_id: str, run_id: int | None) -> list:
    conditions = [Deck.id == deck_id]
    if run_id is not None:
        conditions.append(Deck.run_id == run_id)
    return conditions


def _counter_guard(deck_id: str, run_id: int | None = None) -> list:
    return _run_guard(deck_id, run_id) + [
        Deck.processing_stage.in_(_ACCEPTING),
        Deck.processed_chunks + Deck.failed_chunks < Deck.total_chunks,
    ]


def _returning_snapshot(db: Session, stmt) -> CounterSnapshot | None:
    row = db.execute(
        stmt.returning(
            Deck.processed_chunks,
            Deck.failed_chunks,
            Deck.total_chunks,
            Deck.processing_stage,
        ).execution_options(synchronize_session=False)
    ).first()
    if row is None:
        return None
    return CounterSnapshot(processed=row[0], failed=row[1], total=row[2], stage=row[3])


# processedChunks 原子 +1，进度在同一条 SQL 中由自增后的值计算
# 不提交：调用方把它放在内容写入事务里；给定 run_id 时只计入该轮次
def increment_processed(db: Session, deck_id: str, run_id: int | None = None) -> CounterSnapshot | None:
    stmt = (
        update(Deck)
        .where(*_counter_guard(deck_id, run_id))
        .values(
            processed_chunks=Deck.processed_chunks + 1,
            processing_progress=PROCESSING_FLOOR
            + (PROCESSING_SPAN * (Deck.processed_chunks + 1)) // Deck.total_chunks,
            updated_at=datetime.utcnow(),
        )
    )
    return _returning_snapshot(db, stmt)


# failedChunks 原子 +1（内容写入重试耗尽的 chunk），独立事务
def increment_failed(db: Session, deck_id: str, run_id: int | None = None) -> CounterSnapshot | None:
    stmt = (
        update(Deck)
        .where(*_counter_guard(deck_id, run_id))
        .values(failed_chunks=Deck.failed_chunks + 1, updated_at=datetime.utcnow())
    )
    snapshot = _returning_snapshot(db, stmt)
    db.commit()
    return snapshot


def read_snapshot(db: Session, deck_id: str) -> CounterSnapshot | None:
    row = db.execute(
        select(
            Deck.processed_chunks,
            Deck.failed_chunks,
            Deck.total_chunks,
            Deck.processing_stage,
        ).where(Deck.id == deck_id)
    ).first()
    if row is None:
        return None
    return CounterSnapshot(processed=row[0], failed=row[1], total=row[2], stage=row[3])


# 条件迁移阶段：只有当前阶段在 allowed_from 内才生效，返回是否迁移成功
def advance_stage(
    db: Session,
    deck_id: str,
    stage: ProcessingStage,
    allowed_from: Iterable[str],
    **values,
) -> bool:
    stmt = (
        update(Deck)
        .where(Deck.id == deck_id, Deck.processing_stage.in_(list(allowed_from)))
        .values(
            processing_stage=stage.value,
            processing_progress=values.pop("processing_progress", stage_entry_progress(stage)),
            updated_at=datetime.utcnow(),
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    moved = bool(result.rowcount)
    if moved:
        logger.info("Deck %s -> %s", deck_id, stage.value)
    return moved


# 所有 part 投递完成后进入 PROCESSING_CHUNKS；进度只增不减
def enter_processing_chunks(db: Session, deck_id: str) -> bool:
    return advance_stage(
        db,
        deck_id,
        ProcessingStage.PROCESSING_CHUNKS,
        [ProcessingStage.QUEUING_CHUNKS.value],
        processing_progress=case(
            (Deck.processing_progress < PROCESSING_FLOOR, PROCESSING_FLOOR),
            else_=Deck.processing_progress,
        ),
    )


def _set_material_status(db: Session, study_material_id: str | None, status: StudyMaterialStatus, error: str | None = None) -> None:
    if not study_material_id:
        return
    db.execute(
        update(StudyMaterial)
        .where(StudyMaterial.id == study_material_id)
        .values(status=status, processing_error=error, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )


def mark_material_processing(db: Session, study_material_id: str) -> None:
    _set_material_status(db, study_material_id, "processing")
    db.commit()


# 致命错误：deck -> ERROR；终态不再覆盖（保留第一个错误）
def mark_deck_error(db: Session, deck_id: str, message: str, run_id: int | None = None) -> bool:
    row = db.execute(
        update(Deck)
        .where(*_run_guard(deck_id, run_id), Deck.processing_stage.notin_(_TERMINAL))
        .values(
            processing_stage=ProcessingStage.ERROR.value,
            is_processing=False,
            error=message,
            updated_at=datetime.utcnow(),
        )
        .returning(Deck.study_material_id)
        .execution_options(synchronize_session=False)
    ).first()
    if row is None:
        db.rollback()
        logger.info("Deck %s already terminal or re-queued, keeping its state", deck_id)
        return False
    _set_material_status(db, row[0], "error", message)
    db.commit()
    logger.error("Deck %s failed: %s", deck_id, message)
    return True


# 出现次数最多的 category（平票取最先出现的），默认 general
def majority_category(categories: Iterable[str | None]) -> str:
    cleaned = [item.strip().lower() for item in categories if item and item.strip() and item.lower() != "unknown"]
    if not cleaned:
        return "general"
    counts = Counter(cleaned)
    best = max(counts.values())
    return next(item for item in cleaned if counts[item] == best)


# 所有 chunk 都已结算时收尾：只有抢到 SAVING 的 worker 继续
# 返回最终阶段；未抢到或尚未结算时返回 None
def finalize_deck(db: Session, deck_id: str, run_id: int | None = None) -> ProcessingStage | None:
    row = db.execute(
        update(Deck)
        .where(
            *_run_guard(deck_id, run_id),
            Deck.processing_stage.in_(_ACCEPTING),
            Deck.total_chunks > 0,
            Deck.processed_chunks + Deck.failed_chunks >= Deck.total_chunks,
        )
        .values(
            processing_stage=ProcessingStage.SAVING.value,
            processing_progress=stage_entry_progress(ProcessingStage.SAVING),
            updated_at=datetime.utcnow(),
        )
        .returning(Deck.processed_chunks, Deck.failed_chunks, Deck.total_chunks, Deck.study_material_id)
        .execution_options(synchronize_session=False)
    ).first()
    if row is None:
        db.rollback()
        return None
    db.commit()
    processed, failed, total, study_material_id = row
    logger.info("Deck %s -> SAVING (%s processed, %s failed of %s)", deck_id, processed, failed, total)

    values = {"is_processing": False, "updated_at": datetime.utcnow()}
    if failed == 0:
        final = ProcessingStage.COMPLETED
        categories = db.execute(
            select(ProcessedChunk.category)
            .where(ProcessedChunk.deck_id == deck_id)
            .order_by(ProcessedChunk.chunk_index)
        ).scalars()
        values.update(
            processing_progress=stage_entry_progress(final),
            category=majority_category(categories),
            error=None,
        )
        _set_material_status(db, study_material_id, "completed")
    elif processed == 0:
        final = ProcessingStage.ERROR
        message = f"Failed to save content for all {total} chunks"
        values.update(error=message)
        _set_material_status(db, study_material_id, "error", message)
    else:
        final = ProcessingStage.PARTIAL_COMPLETION
        values.update(error=f"Content for {failed} of {total} chunks could not be saved")
        _set_material_status(db, study_material_id, "completed")

    db.execute(
        update(Deck)
        .where(Deck.id == deck_id, Deck.processing_stage == ProcessingStage.SAVING.value)
        .values(processing_stage=final.value, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("Deck %s -> %s", deck_id, final.value)
    return final
