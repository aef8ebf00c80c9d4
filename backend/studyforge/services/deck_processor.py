from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from studyforge.core.config import settings
from studyforge.core.error_reporting import report_exception
from studyforge.core.errors import (
    ChunkingError,
    GenerationError,
    JobValidationError,
    PartCountMismatchError,
    PersistenceExhaustedError,
    PipelineError,
    PublishError,
)
from studyforge.core.schemas import ChunkPartJob, ChunkResult, EnrichJob, MindMap, StartJob
from studyforge.core.stages import RESTARTABLE_STAGES, ProcessingStage, is_terminal
from studyforge.models import Deck, ProcessedChunk, StudyMaterial
from studyforge.services import part_codec, part_store
from studyforge.services.content_service import PersistStatus, persist_chunk_content
from studyforge.services.graph_builder import build_mind_map_inputs, normalize_concept_graph
from studyforge.services.pdf_service import split_pdf_into_chunks
from studyforge.services.progress import (
    CounterSnapshot,
    advance_stage,
    enter_processing_chunks,
    finalize_deck,
    increment_failed,
    mark_deck_error,
    mark_material_processing,
)
from studyforge.services.prompt_strategy import build_chunk_prompt, build_difficulty_prompt

logger = logging.getLogger(__name__)

JOB_START = "start"
JOB_CHUNK_PART = "chunk_part"
JOB_ENRICH = "enrich"

UNEXPECTED_ERROR = "Unexpected error in processing handler"


# 流水线依赖的外部能力，测试中可整体替换
@dataclass(frozen=True)
class PipelineDeps:
    session_factory: sessionmaker
    generate: Callable[[bytes, str, str], ChunkResult]
    generate_mind_map: Callable[[str, List[str], str], MindMap]
    read_file: Callable[[str], bytes]
    publish: Callable[[str, Dict[str, Any]], Any]
    report_error: Callable[..., None] = report_exception
    sleep: Callable[[float], None] = time.sleep
    pages_per_chunk: int = field(default_factory=lambda: settings.pages_per_chunk)
    part_size_bytes: int = field(default_factory=lambda: settings.part_size_bytes)
    processing_strategy: str = field(default_factory=lambda: settings.processing_strategy)
    inline_max_chunks: int = field(default_factory=lambda: settings.inline_max_chunks)
    inline_batch_size: int = field(default_factory=lambda: settings.inline_batch_size)


def _invalid_payload(payload: Any, exc: ValidationError, deps: PipelineDeps, job: str) -> Dict[str, Any]:
    deck_id = payload.get("deckId") if isinstance(payload, dict) else None
    run_id = payload.get("runId") if isinstance(payload, dict) else None
    errors = exc.errors()
    detail = errors[0].get("msg", "validation failed") if errors else "validation failed"
    known_deck = deck_id if isinstance(deck_id, str) and deck_id else None
    error = JobValidationError(f"Invalid {job} job: {detail}", deck_id=known_deck)
    logger.warning("Rejected %s job for deck %s: %s", job, deck_id, exc)
    if known_deck is not None:
        db = deps.session_factory()
        try:
            if db.get(Deck, known_deck) is not None:
                mark_deck_error(db, known_deck, error.message, run_id=run_id if isinstance(run_id, int) else None)
        finally:
            db.close()
    deps.report_error(error, deck_id=known_deck, job=job)
    return {"error": "INVALID_PAYLOAD", "message": error.message}


# 致命错误统一出口：deck -> ERROR，清理残留 part，上报
# deck 已进入新轮次时不改动其状态与 part
def _fail_deck(deps: PipelineDeps, deck_id: str, run_id: int, exc: BaseException, message: str, **context: Any) -> Dict[str, Any]:
    db = deps.session_factory()
    try:
        mark_deck_error(db, deck_id, message, run_id=run_id)
        deck = db.get(Deck, deck_id)
        if deck is not None and deck.run_id == run_id:
            part_store.discard_parts(db, deck_id)
    finally:
        db.close()
    deps.report_error(exc, deck_id=deck_id, **context)
    return {"error": type(exc).__name__, "message": message}


# ---- start ----


def _choose_inline(deps: PipelineDeps, total_chunks: int) -> bool:
    strategy = (deps.processing_strategy or "auto").lower()
    if strategy == "inline":
        return True
    if strategy == "fanout":
        return False
    return total_chunks <= deps.inline_max_chunks


def _chunk_messages(job: StartJob, chunks: List[bytes], difficulty_prompt: str, part_size: int) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    total_chunks = len(chunks)
    for chunk_index, chunk in enumerate(chunks):
        encoded = part_codec.encode_chunk(chunk)
        parts = part_codec.split_parts(encoded, part_size)
        base = {
            "deckId": job.deck_id,
            "studyMaterialId": job.study_material_id,
            "runId": job.run_id,
            "chunkIndex": chunk_index,
            "totalChunks": total_chunks,
            "difficultyPrompt": difficulty_prompt,
            "difficulty": job.difficulty,
            "aiModel": job.ai_model,
            "isLastChunk": chunk_index == total_chunks - 1,
        }
        # 单个 part 直接携带完整 chunk，跳过 part 存储
        if len(parts) == 1:
            messages.append(ChunkPartJob(**base, chunk=encoded).to_message())
            continue
        for part_index, data in enumerate(parts):
            messages.append(
                ChunkPartJob(
                    **base, chunkPart=data, partIndex=part_index, totalParts=len(parts)
                ).to_message()
            )
    return messages


def _dispatch_chunks(job: StartJob, chunks: List[bytes], difficulty_prompt: str, deps: PipelineDeps) -> Dict[str, Any]:
    messages = _chunk_messages(job, chunks, difficulty_prompt, deps.part_size_bytes)
    for message in messages:
        deps.publish(JOB_CHUNK_PART, message)

    db = deps.session_factory()
    try:
        enter_processing_chunks(db, job.deck_id)
    finally:
        db.close()
    logger.info("Deck %s: dispatched %s messages for %s chunks", job.deck_id, len(messages), len(chunks))
    return {"status": "dispatched", "deck_id": job.deck_id, "total_chunks": len(chunks), "messages": len(messages)}


# start 任务：校验 -> 读取文件 -> 切分 -> 分发（或 inline 处理）
def handle_start(payload: Dict[str, Any], deps: PipelineDeps) -> Dict[str, Any]:
    try:
        job = StartJob.model_validate(payload)
    except ValidationError as exc:
        return _invalid_payload(payload, exc, deps, JOB_START)

    db = deps.session_factory()
    try:
        deck = db.get(Deck, job.deck_id)
        if deck is None:
            logger.warning("Start job for unknown deck %s", job.deck_id)
            return {"error": "DECK_NOT_FOUND"}
        if job.run_id is not None and job.run_id != deck.run_id:
            logger.info("Start job for deck %s run %s superseded by run %s", job.deck_id, job.run_id, deck.run_id)
            return {"status": "skipped", "reason": "stale_run"}
        job = job.model_copy(update={"run_id": deck.run_id})
        if deck.processing_stage not in RESTARTABLE_STAGES:
            logger.info("Deck %s already at %s, skipping start job", job.deck_id, deck.processing_stage)
            return {"status": "skipped", "stage": deck.processing_stage}
        if db.get(StudyMaterial, job.study_material_id) is None:
            mark_deck_error(db, job.deck_id, "Study material not found", run_id=job.run_id)
            return {"error": "STUDY_MATERIAL_NOT_FOUND"}

        if not advance_stage(
            db,
            job.deck_id,
            ProcessingStage.CHUNKING,
            RESTARTABLE_STAGES,
            is_processing=True,
            error=None,
        ):
            return {"status": "skipped"}
        mark_material_processing(db, job.study_material_id)
    finally:
        db.close()

    try:
        data = deps.read_file(job.file_path)
        chunks = split_pdf_into_chunks(data, job.page_range, deps.pages_per_chunk)
        if not chunks:
            raise ChunkingError("PDF processing failed: no pages in the selected range", deck_id=job.deck_id)
        logger.info("Deck %s: %s pages/chunk -> %s chunks", job.deck_id, deps.pages_per_chunk, len(chunks))

        db = deps.session_factory()
        try:
            queued = advance_stage(
                db,
                job.deck_id,
                ProcessingStage.QUEUING_CHUNKS,
                [ProcessingStage.CHUNKING.value],
                total_chunks=len(chunks),
                processed_chunks=0,
                failed_chunks=0,
            )
        finally:
            db.close()
        if not queued:
            return {"status": "skipped"}

        difficulty_prompt = build_difficulty_prompt(job.difficulty, job.page_range, job.metadata.type)
        if _choose_inline(deps, len(chunks)):
            return run_inline(job, chunks, difficulty_prompt, deps)
        return _dispatch_chunks(job, chunks, difficulty_prompt, deps)
    except PipelineError as exc:
        return _fail_deck(deps, job.deck_id, job.run_id, exc, str(exc), job=JOB_START)
    except Exception as exc:
        return _fail_deck(deps, job.deck_id, job.run_id, exc, UNEXPECTED_ERROR, job=JOB_START)


# ---- chunk-part ----


def _generate_chunk(deps: PipelineDeps, chunk: bytes, job_index: int, total: int, difficulty_prompt: str, ai_model: str, deck_id: str) -> ChunkResult:
    message = f"Failed to generate valid content for chunk {job_index + 1}/{total}"
    prompt = build_chunk_prompt(job_index, total, difficulty_prompt)
    try:
        result = deps.generate(chunk, prompt, ai_model)
    except Exception as exc:
        raise GenerationError(message, chunk_index=job_index, deck_id=deck_id) from exc
    if result is None or result.is_degenerate():
        raise GenerationError(message, chunk_index=job_index, deck_id=deck_id)
    return result


# 所有 chunk 结算后收尾；COMPLETED 时投递 enrich
def _maybe_finalize(
    deps: PipelineDeps,
    deck_id: str,
    run_id: int,
    study_material_id: str,
    ai_model: str,
    snapshot: CounterSnapshot | None,
) -> ProcessingStage | None:
    if snapshot is None or not snapshot.is_settled:
        return None
    db = deps.session_factory()
    try:
        final = finalize_deck(db, deck_id, run_id)
        if final is not None:
            part_store.discard_parts(db, deck_id)
    finally:
        db.close()
    if final is ProcessingStage.COMPLETED:
        message = EnrichJob(deckId=deck_id, studyMaterialId=study_material_id, runId=run_id, aiModel=ai_model).to_message()
        try:
            deps.publish(JOB_ENRICH, message)
        except PublishError as exc:
            # 图谱是附加信息，投递失败不影响 deck 状态
            deps.report_error(exc, deck_id=deck_id, job=JOB_ENRICH)
    return final


# 写入并推进计数；写入重试耗尽时记为失败 chunk
def _persist_and_settle(
    deps: PipelineDeps,
    deck_id: str,
    run_id: int,
    study_material_id: str,
    chunk_index: int,
    result: ChunkResult,
    difficulty: str,
    ai_model: str,
) -> Tuple[str, ProcessingStage | None]:
    try:
        outcome = persist_chunk_content(
            deps.session_factory,
            deck_id,
            study_material_id,
            chunk_index,
            result,
            difficulty,
            sleep=deps.sleep,
            run_id=run_id,
        )
        status, snapshot = outcome.status.value, outcome.snapshot
    except PersistenceExhaustedError as exc:
        deps.report_error(exc, deck_id=deck_id, chunk_index=chunk_index)
        db = deps.session_factory()
        try:
            snapshot = increment_failed(db, deck_id, run_id)
        finally:
            db.close()
        status = "failed"
    return status, _maybe_finalize(deps, deck_id, run_id, study_material_id, ai_model, snapshot)


# 消息属于已被重新入队取代的轮次，或与当前轮次的切分不一致
def _is_stale_chunk(deck: Deck, job: ChunkPartJob) -> bool:
    if job.run_id != deck.run_id:
        return True
    return job.total_chunks != deck.total_chunks or job.chunk_index >= deck.total_chunks


def _chunk_already_processed(db, deck_id: str, chunk_index: int) -> bool:
    stmt = select(ProcessedChunk.id).where(
        ProcessedChunk.deck_id == deck_id, ProcessedChunk.chunk_index == chunk_index
    )
    return db.execute(stmt).first() is not None


# 收集 part；返回编码后的完整 chunk，未收齐或已被取走时返回 None
def _collect_chunk(deps: PipelineDeps, job: ChunkPartJob) -> Tuple[str | None, Dict[str, Any]]:
    if not job.is_multipart:
        return job.chunk, {}

    db = deps.session_factory()
    try:
        part_store.put_part(db, job.deck_id, job.chunk_index, job.part_index, job.total_parts, job.chunk_part)
        deck = db.get(Deck, job.deck_id)
        if deck is None or is_terminal(deck.processing_stage):
            part_store.discard_parts(db, job.deck_id, job.chunk_index)
            return None, {"status": "skipped"}

        count = part_store.count_parts(db, job.deck_id, job.chunk_index)
        state = part_store.classify(count, job.total_parts)
        logger.info(
            "Deck %s chunk %s: part %s/%s stored (%s/%s) -> %s",
            job.deck_id,
            job.chunk_index,
            job.part_index + 1,
            job.total_parts,
            count,
            job.total_parts,
            state.value,
        )
        if state is part_store.PartState.RECEIVING:
            return None, {"status": state.value.lower(), "received": count}
        if state is part_store.PartState.INCONSISTENT:
            raise PartCountMismatchError(
                f"Chunk {job.chunk_index + 1} received {count} parts, expected {job.total_parts}",
                expected=job.total_parts,
                actual=count,
                deck_id=job.deck_id,
            )
        parts = part_store.take_all(db, job.deck_id, job.chunk_index, job.total_parts)
    finally:
        db.close()
    if parts is None:
        return None, {"status": part_store.PartState.CONSUMED.value.lower()}
    return part_codec.join_parts(parts), {}


# chunk-part 任务：收集 part -> 重组解码 -> 生成 -> 写入 -> 推进进度
def handle_chunk_part(payload: Dict[str, Any], deps: PipelineDeps) -> Dict[str, Any]:
    try:
        job = ChunkPartJob.model_validate(payload)
    except ValidationError as exc:
        return _invalid_payload(payload, exc, deps, JOB_CHUNK_PART)

    db = deps.session_factory()
    try:
        deck = db.get(Deck, job.deck_id)
        if deck is None:
            logger.warning("Chunk job for unknown deck %s", job.deck_id)
            return {"error": "DECK_NOT_FOUND"}
        if _is_stale_chunk(deck, job):
            logger.info(
                "Deck %s: dropping chunk %s from run %s (current run %s, %s chunks)",
                job.deck_id,
                job.chunk_index,
                job.run_id,
                deck.run_id,
                deck.total_chunks,
            )
            return {"status": "skipped", "reason": "stale_run"}
        if is_terminal(deck.processing_stage):
            part_store.discard_parts(db, job.deck_id, job.chunk_index)
            logger.info("Deck %s is %s, dropping chunk %s", job.deck_id, deck.processing_stage, job.chunk_index)
            return {"status": "skipped", "stage": deck.processing_stage}
        if _chunk_already_processed(db, job.deck_id, job.chunk_index):
            part_store.discard_parts(db, job.deck_id, job.chunk_index)
            logger.info("Deck %s chunk %s already processed, acknowledging", job.deck_id, job.chunk_index)
            return {"status": PersistStatus.DUPLICATE.value}
    finally:
        db.close()

    try:
        encoded, early = _collect_chunk(deps, job)
        if encoded is None:
            return early
        chunk = part_codec.decode_chunk(encoded)
        result = _generate_chunk(
            deps, chunk, job.chunk_index, job.total_chunks, job.difficulty_prompt, job.ai_model, job.deck_id
        )
        status, final = _persist_and_settle(
            deps,
            job.deck_id,
            job.run_id,
            job.study_material_id,
            job.chunk_index,
            result,
            job.difficulty,
            job.ai_model,
        )
    except PipelineError as exc:
        return _fail_deck(
            deps, job.deck_id, job.run_id, exc, str(exc), job=JOB_CHUNK_PART, chunk_index=job.chunk_index
        )
    except Exception as exc:
        return _fail_deck(
            deps, job.deck_id, job.run_id, exc, UNEXPECTED_ERROR, job=JOB_CHUNK_PART, chunk_index=job.chunk_index
        )

    response: Dict[str, Any] = {"status": status, "deck_id": job.deck_id, "chunk_index": job.chunk_index}
    if final is not None:
        response["final_stage"] = final.value
    return response


# ---- inline ----


def _generate_batch(deps: PipelineDeps, job: StartJob, batch: List[Tuple[int, bytes]], total: int, difficulty_prompt: str) -> List[ChunkResult]:
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(batch)) as executor:
        futures = [
            executor.submit(
                _generate_chunk, deps, chunk, index, total, difficulty_prompt, job.ai_model, job.deck_id
            )
            for index, chunk in batch
        ]
        # 按 chunk 顺序取结果，第一个失败立即终止
        return [future.result() for future in futures]


# inline 策略：单个任务内分批并发生成，阶段与写入规则与 fan-out 一致
def run_inline(job: StartJob, chunks: List[bytes], difficulty_prompt: str, deps: PipelineDeps) -> Dict[str, Any]:
    db = deps.session_factory()
    try:
        enter_processing_chunks(db, job.deck_id)
    finally:
        db.close()

    total = len(chunks)
    batch_size = max(1, deps.inline_batch_size)
    indexed = list(enumerate(chunks))
    final: ProcessingStage | None = None
    saved = 0
    for offset in range(0, total, batch_size):
        batch = indexed[offset : offset + batch_size]
        logger.info("Deck %s: inline batch %s-%s of %s", job.deck_id, offset + 1, offset + len(batch), total)
        results = _generate_batch(deps, job, batch, total, difficulty_prompt)
        for (chunk_index, _), result in zip(batch, results):
            status, stage = _persist_and_settle(
                deps,
                job.deck_id,
                job.run_id,
                job.study_material_id,
                chunk_index,
                result,
                job.difficulty,
                job.ai_model,
            )
            if status == PersistStatus.SAVED.value:
                saved += 1
            final = stage or final

    response: Dict[str, Any] = {"status": "inline", "deck_id": job.deck_id, "total_chunks": total, "saved": saved}
    if final is not None:
        response["final_stage"] = final.value
    return response


# ---- enrich ----


# enrich 任务：根据已写入内容生成概念图谱；失败只上报，不改变 deck 状态
def handle_enrich(payload: Dict[str, Any], deps: PipelineDeps) -> Dict[str, Any]:
    try:
        job = EnrichJob.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Rejected enrich job: %s", exc)
        return {"error": "INVALID_PAYLOAD"}

    db = deps.session_factory()
    try:
        deck = db.get(Deck, job.deck_id)
        if deck is None or deck.processing_stage != ProcessingStage.COMPLETED.value:
            logger.info("Deck %s not completed, skipping enrichment", job.deck_id)
            return {"status": "skipped"}
        if deck.run_id != job.run_id:
            logger.info("Deck %s re-queued since run %s, skipping enrichment", job.deck_id, job.run_id)
            return {"status": "skipped", "reason": "stale_run"}
        try:
            inputs = build_mind_map_inputs(db, job.deck_id)
            if inputs.item_count == 0:
                raise GenerationError("No study content available for mind map generation", deck_id=job.deck_id)
            mind_map = deps.generate_mind_map(inputs.summaries, inputs.topics, job.ai_model)
            graph = normalize_concept_graph(mind_map)
            db.execute(
                update(Deck)
                .where(
                    Deck.id == job.deck_id,
                    Deck.run_id == job.run_id,
                    Deck.processing_stage == ProcessingStage.COMPLETED.value,
                )
                .values(mind_map=graph)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            deps.report_error(exc, deck_id=job.deck_id, job=JOB_ENRICH)
            return {"error": "ENRICH_FAILED", "message": str(exc)}
    finally:
        db.close()

    logger.info(
        "Deck %s: mind map with %s nodes, %s connections",
        job.deck_id,
        len(graph["nodes"]),
        len(graph["connections"]),
    )
    return {"status": "enriched", "nodes": len(graph["nodes"]), "connections": len(graph["connections"])}
