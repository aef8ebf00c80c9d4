from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import delete
from sqlalchemy.orm import Session

from studyforge.core.database import get_db
from studyforge.core.errors import PublishError
from studyforge.core.schemas import DeckProgressOut, StartJob, StartProcessingResponse
from studyforge.core.stages import RESTARTABLE_STAGES, ProcessingStage, is_terminal
from studyforge.models import ChunkPart, Deck
from studyforge.services.content_service import reset_deck_content
from studyforge.services.deck_processor import JOB_START
from studyforge.services.progress import mark_deck_error

logger = logging.getLogger(__name__)

# API 路由器：deck 处理入队与进度查询
router = APIRouter()


# 任务投递函数（测试中可通过 dependency_overrides 替换）
def get_publisher() -> Callable[[str, Dict[str, Any]], Any]:
    from studyforge.tasks.pipeline import publish

    return publish


# 入队 deck 处理任务
@router.post("", response_model=StartProcessingResponse)
def start_processing(
    job: StartJob,
    db: Session = Depends(get_db),
    publish: Callable[[str, Dict[str, Any]], Any] = Depends(get_publisher),
):
    deck = db.get(Deck, job.deck_id)
    if not deck:
        raise HTTPException(status_code=404, detail="Deck not found")
    if deck.processing_stage not in RESTARTABLE_STAGES and not is_terminal(deck.processing_stage):
        raise HTTPException(status_code=409, detail="Deck is already being processed")

    # 重新处理：清空上一轮的内容、计数、完成记录与残留 part，开启新的轮次
    reset_deck_content(db, deck.id)
    db.execute(delete(ChunkPart).where(ChunkPart.deck_id == deck.id))
    deck.run_id = (deck.run_id or 0) + 1
    deck.processing_stage = ProcessingStage.QUEUED.value
    deck.processing_progress = 0
    deck.is_processing = True
    deck.total_chunks = 0
    deck.processed_chunks = 0
    deck.failed_chunks = 0
    deck.error = None
    deck.category = None
    deck.mind_map = None
    deck.updated_at = datetime.utcnow()
    db.commit()

    run_id = deck.run_id
    message = job.model_copy(update={"run_id": run_id}).to_message()
    try:
        task_id = publish(JOB_START, message)
    except PublishError as exc:
        mark_deck_error(db, job.deck_id, str(exc), run_id=run_id)
        raise HTTPException(status_code=503, detail="Processing queue unavailable") from exc
    logger.info("Queued deck %s run %s for processing (task %s)", job.deck_id, run_id, task_id)
    return StartProcessingResponse(deck_id=job.deck_id, task_id=task_id, status="queued")


# 查询 deck 处理进度（客户端轮询）
@router.get("/{deck_id}", response_model=DeckProgressOut)
def get_processing_status(deck_id: str, db: Session = Depends(get_db)):
    deck = db.get(Deck, deck_id)
    if not deck:
        raise HTTPException(status_code=404, detail="Deck not found")
    return DeckProgressOut(
        id=deck.id,
        title=deck.title,
        is_processing=deck.is_processing,
        processing_stage=deck.processing_stage,
        processing_progress=deck.processing_progress,
        processed_chunks=deck.processed_chunks,
        failed_chunks=deck.failed_chunks,
        total_chunks=deck.total_chunks,
        error=deck.error,
        category=deck.category,
        mind_map=deck.mind_map,
    )
