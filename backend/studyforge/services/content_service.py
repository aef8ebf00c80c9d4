from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Tuple
from uuid import uuid4

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from studyforge.core.config import settings
from studyforge.core.errors import PersistenceExhaustedError
from studyforge.core.schemas import ChunkResult, ContentType
from studyforge.models import (
    Deck,
    DeckContent,
    FlashcardContent,
    FrqContent,
    McqContent,
    ProcessedChunk,
    StudyContent,
)
from studyforge.services.progress import CounterSnapshot, increment_processed, read_snapshot
from studyforge.services.prompt_strategy import difficulty_level

logger = logging.getLogger(__name__)


class PersistStatus(str, Enum):
    # 内容已写入，计数已 +1
    SAVED = "saved"
    # 该 chunk 已在完成记录中（重复投递）
    DUPLICATE = "duplicate"
    # deck 已不接收 chunk 结果（终态或已结算）
    REJECTED = "rejected"


@dataclass(frozen=True)
class PersistOutcome:
    status: PersistStatus
    snapshot: CounterSnapshot | None
    attempts: int = 1


# 预留一段连续的排序号，返回起始值（不含）
def _reserve_order_block(db: Session, deck_id: str, size: int) -> int | None:
    row = db.execute(
        update(Deck)
        .where(Deck.id == deck_id)
        .values(content_seq=Deck.content_seq + size)
        .returning(Deck.content_seq)
        .execution_options(synchronize_session=False)
    ).first()
    if row is None:
        return None
    return row[0] - size


def _study_content(kind: ContentType, study_material_id: str, level: str) -> StudyContent:
    return StudyContent(id=uuid4().hex, study_material_id=study_material_id, type=kind, difficulty_level=level)


def _content_rows(result: ChunkResult, study_material_id: str, level: str) -> List[Tuple[StudyContent, object]]:
    rows: List[Tuple[StudyContent, object]] = []
    for card in result.flashcards:
        content = _study_content("flashcard", study_material_id, level)
        rows.append(
            (content, FlashcardContent(id=uuid4().hex, study_content_id=content.id, front=card.front, back=card.back, topic=card.topic or None))
        )
    for mcq in result.mcqs:
        content = _study_content("mcq", study_material_id, mcq.difficulty or level)
        rows.append(
            (
                content,
                McqContent(
                    id=uuid4().hex,
                    study_content_id=content.id,
                    question=mcq.question,
                    options=list(mcq.options),
                    correct_option_index=mcq.correct_option_index,
                    explanation=mcq.explanation,
                    topic=mcq.topic or None,
                ),
            )
        )
    for frq in result.frqs:
        content = _study_content("frq", study_material_id, frq.difficulty or level)
        rows.append(
            (
                content,
                FrqContent(
                    id=uuid4().hex,
                    study_content_id=content.id,
                    question=frq.question,
                    answers=list(frq.answers),
                    case_sensitive=frq.case_sensitive,
                    explanation=frq.explanation,
                    topic=frq.topic or None,
                ),
            )
        )
    return rows


# 单次事务：完成记录 -> 预留排序号 -> 内容行 -> processedChunks 原子 +1
def _persist_once(
    db: Session,
    deck_id: str,
    study_material_id: str,
    chunk_index: int,
    result: ChunkResult,
    difficulty: str,
    timeout_seconds: int,
    run_id: int | None = None,
) -> PersistOutcome:
    if db.get_bind().dialect.name.startswith("postgres"):
        db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds) * 1000}"))

    db.add(
        ProcessedChunk(
            id=uuid4().hex,
            deck_id=deck_id,
            chunk_index=chunk_index,
            item_count=result.item_count,
            summary=result.summary,
            category=result.category,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("Chunk %s of deck %s already persisted, skipping", chunk_index, deck_id)
        return PersistOutcome(PersistStatus.DUPLICATE, read_snapshot(db, deck_id))

    rows = _content_rows(result, study_material_id, difficulty_level(difficulty))
    start = _reserve_order_block(db, deck_id, len(rows))
    if start is None:
        db.rollback()
        return PersistOutcome(PersistStatus.REJECTED, None)
    for offset, (content, detail) in enumerate(rows):
        db.add(content)
        db.add(detail)
        db.add(DeckContent(id=uuid4().hex, deck_id=deck_id, study_content_id=content.id, order=start + offset))
    db.flush()

    snapshot = increment_processed(db, deck_id, run_id)
    if snapshot is None:
        db.rollback()
        logger.info("Deck %s no longer accepts chunk results, dropping chunk %s", deck_id, chunk_index)
        return PersistOutcome(PersistStatus.REJECTED, read_snapshot(db, deck_id))
    db.commit()
    return PersistOutcome(PersistStatus.SAVED, snapshot)


# 写入一个 chunk 的生成内容；事务冲突/超时按 2^n * base 毫秒退避重试
def persist_chunk_content(
    session_factory: sessionmaker,
    deck_id: str,
    study_material_id: str,
    chunk_index: int,
    result: ChunkResult,
    difficulty: str,
    sleep: Callable[[float], None] = time.sleep,
    max_retries: int | None = None,
    run_id: int | None = None,
) -> PersistOutcome:
    attempts = settings.persist_max_retries if max_retries is None else max_retries
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            outcome = _persist_once(
                db,
                deck_id,
                study_material_id,
                chunk_index,
                result,
                difficulty,
                settings.persist_timeout_seconds,
                run_id=run_id,
            )
            if outcome.status is PersistStatus.SAVED:
                logger.info(
                    "Saved %s items for chunk %s of deck %s (%s/%s)",
                    result.item_count,
                    chunk_index,
                    deck_id,
                    outcome.snapshot.processed,
                    outcome.snapshot.total,
                )
            return PersistOutcome(outcome.status, outcome.snapshot, attempts=attempt)
        except DBAPIError as exc:
            db.rollback()
            last_error = exc
            if attempt < attempts:
                delay_ms = (2**attempt) * settings.persist_backoff_base_ms
                logger.warning(
                    "Transaction failed for chunk %s of deck %s (attempt %s/%s), retrying in %sms: %s",
                    chunk_index,
                    deck_id,
                    attempt,
                    attempts,
                    delay_ms,
                    exc,
                )
                sleep(delay_ms / 1000)
        finally:
            db.close()

    raise PersistenceExhaustedError(
        f"Failed to save content for chunk {chunk_index + 1} after {attempts} attempts: {last_error}",
        attempts=attempts,
        deck_id=deck_id,
    )


# 重新处理前清空 deck 上一轮写入的内容（排序号序列一并归零）
def reset_deck_content(db: Session, deck_id: str) -> int:
    content_ids = list(
        db.execute(select(DeckContent.study_content_id).where(DeckContent.deck_id == deck_id)).scalars()
    )
    db.execute(delete(DeckContent).where(DeckContent.deck_id == deck_id))
    if content_ids:
        for model in (FlashcardContent, McqContent, FrqContent):
            db.execute(delete(model).where(model.study_content_id.in_(content_ids)))
        db.execute(delete(StudyContent).where(StudyContent.id.in_(content_ids)))
    db.execute(delete(ProcessedChunk).where(ProcessedChunk.deck_id == deck_id))
    db.execute(
        update(Deck)
        .where(Deck.id == deck_id)
        .values(content_seq=0)
        .execution_options(synchronize_session=False)
    )
    logger.info("Deck %s: cleared %s content items from the previous run", deck_id, len(content_ids))
    return len(content_ids)
