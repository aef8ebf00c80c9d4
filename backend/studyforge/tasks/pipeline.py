from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict

from kombu.exceptions import OperationalError

from studyforge.core.celery_app import celery_app
from studyforge.core.config import settings
from studyforge.core.database import SessionLocal
from studyforge.core.errors import PublishError
from studyforge.services import deck_processor, llm_service
from studyforge.services.deck_processor import JOB_CHUNK_PART, JOB_ENRICH, JOB_START, PipelineDeps
from studyforge.utils.file_store import read_upload

logger = logging.getLogger(__name__)


# 投递任务：有限次数 + 线性退避，全部失败时抛出 PublishError
def publish_job(
    task,
    payload: Dict[str, Any],
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    attempts = settings.publish_max_attempts if max_attempts is None else max_attempts
    backoff = settings.publish_backoff_seconds if backoff_seconds is None else backoff_seconds
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = task.apply_async(args=[payload])
            return result.id
        except OperationalError as exc:
            last_error = exc
            logger.warning("Publish of %s failed (attempt %s/%s): %s", task.name, attempt, attempts, exc)
            if attempt < attempts:
                sleep(backoff * attempt)
    raise PublishError(
        f"Failed to enqueue {task.name} after {attempts} attempts: {last_error}",
        deck_id=payload.get("deckId"),
    )


def _task_for(kind: str):
    tasks = {
        JOB_START: start_deck_processing,
        JOB_CHUNK_PART: process_chunk_part,
        JOB_ENRICH: enrich_deck,
    }
    return tasks[kind]


def publish(kind: str, payload: Dict[str, Any]) -> str | None:
    return publish_job(_task_for(kind), payload)


# 生产环境依赖：数据库会话、LLM、上传目录、Celery 投递
def default_deps() -> PipelineDeps:
    return PipelineDeps(
        session_factory=SessionLocal,
        generate=llm_service.generate_study_content,
        generate_mind_map=llm_service.generate_mind_map,
        read_file=read_upload,
        publish=publish,
    )


# Celery 任务：切分文档并分发 chunk
@celery_app.task(name="studyforge.tasks.pipeline.start_deck_processing")
def start_deck_processing(payload: Dict[str, Any]) -> Dict[str, Any]:
    return deck_processor.handle_start(payload, default_deps())


# Celery 任务：处理单个 chunk 的一个 part
@celery_app.task(name="studyforge.tasks.pipeline.process_chunk_part")
def process_chunk_part(payload: Dict[str, Any]) -> Dict[str, Any]:
    return deck_processor.handle_chunk_part(payload, default_deps())


# Celery 任务：生成概念图谱
@celery_app.task(name="studyforge.tasks.pipeline.enrich_deck")
def enrich_deck(payload: Dict[str, Any]) -> Dict[str, Any]:
    return deck_processor.handle_enrich(payload, default_deps())
