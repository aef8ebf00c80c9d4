from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


Difficulty = Literal["low", "moderate", "high"]
DifficultyLevel = Literal["easy", "medium", "hard"]
StudyMaterialStatus = Literal["processing", "completed", "error"]
ContentType = Literal["flashcard", "mcq", "frq"]


# 队列消息统一使用 camelCase 字段（与上游入队方保持一致）
class JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PageRange(BaseModel):
    start: int = Field(..., ge=1)
    end: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _check_order(self) -> "PageRange":
        if self.end < self.start:
            raise ValueError("pageRange.end must be >= pageRange.start")
        return self


class FileMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_name: str = Field(..., alias="originalName")
    type: str
    size: int = Field(..., ge=0)


class StartJob(JobPayload):
    deck_id: str = Field(..., alias="deckId", min_length=1)
    study_material_id: str = Field(..., alias="studyMaterialId", min_length=1)
    file_path: str = Field(..., alias="filePath", min_length=1)
    metadata: FileMetadata
    page_range: Optional[PageRange] = Field(None, alias="pageRange")
    ai_model: str = Field(..., alias="aiModel", min_length=1)
    difficulty: Difficulty
    # 缺省时沿用 deck 当前轮次
    run_id: Optional[int] = Field(None, alias="runId", ge=0)


class ChunkPartJob(JobPayload):
    deck_id: str = Field(..., alias="deckId", min_length=1)
    study_material_id: str = Field(..., alias="studyMaterialId", min_length=1)
    run_id: int = Field(..., alias="runId", ge=0)
    chunk_index: int = Field(..., alias="chunkIndex", ge=0)
    total_chunks: int = Field(..., alias="totalChunks", ge=1)
    # 多 part 形式：chunkPart + partIndex + totalParts
    chunk_part: Optional[str] = Field(None, alias="chunkPart")
    part_index: Optional[int] = Field(None, alias="partIndex", ge=0)
    total_parts: Optional[int] = Field(None, alias="totalParts", ge=1)
    # 单条消息形式：chunk 携带完整编码，跳过 part 存储
    chunk: Optional[str] = None
    difficulty_prompt: str = Field(..., alias="difficultyPrompt", min_length=1)
    difficulty: Difficulty = "moderate"
    ai_model: str = Field(..., alias="aiModel", min_length=1)
    is_last_chunk: bool = Field(False, alias="isLastChunk")

    @model_validator(mode="after")
    def _check_variant(self) -> "ChunkPartJob":
        if self.chunk_index >= self.total_chunks:
            raise ValueError("chunkIndex must be < totalChunks")
        if self.chunk is not None:
            return self
        if self.chunk_part is None or self.part_index is None or self.total_parts is None:
            raise ValueError("either chunk or chunkPart/partIndex/totalParts is required")
        if self.part_index >= self.total_parts:
            raise ValueError("partIndex must be < totalParts")
        return self

    @property
    def is_multipart(self) -> bool:
        return self.chunk is None


class EnrichJob(JobPayload):
    deck_id: str = Field(..., alias="deckId", min_length=1)
    study_material_id: str = Field(..., alias="studyMaterialId", min_length=1)
    run_id: int = Field(..., alias="runId", ge=0)
    ai_model: str = Field(..., alias="aiModel", min_length=1)


# ---- 生成结果 ----


class FlashcardItem(BaseModel):
    front: str
    back: str
    topic: str = ""


class McqItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    options: List[str]
    correct_option_index: int = Field(..., alias="correctOptionIndex")
    explanation: str = ""
    topic: str = ""
    difficulty: Optional[DifficultyLevel] = None


class FrqItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    answers: List[str]
    case_sensitive: bool = Field(False, alias="caseSensitive")
    explanation: str = ""
    topic: str = ""
    difficulty: Optional[DifficultyLevel] = None


class ChunkResult(BaseModel):
    summary: str = ""
    flashcards: List[FlashcardItem] = Field(default_factory=list)
    mcqs: List[McqItem] = Field(default_factory=list)
    frqs: List[FrqItem] = Field(default_factory=list)
    category: str = "unknown"

    @property
    def item_count(self) -> int:
        return len(self.flashcards) + len(self.mcqs) + len(self.frqs)

    # 三类内容全部为空视为生成失败
    def is_degenerate(self) -> bool:
        return self.item_count == 0


class MindMapNode(BaseModel):
    id: str
    label: str
    type: Literal["main", "subtopic", "detail"] = "detail"


class MindMapConnection(BaseModel):
    source: str
    target: str
    label: str = ""
    type: Literal["hierarchical", "related", "dependency"] = "related"


class MindMap(BaseModel):
    nodes: List[MindMapNode] = Field(default_factory=list)
    connections: List[MindMapConnection] = Field(default_factory=list)


# ---- API ----


class StartProcessingResponse(BaseModel):
    deck_id: str
    task_id: str | None = None
    status: str = "queued"


class DeckProgressOut(BaseModel):
    id: str
    title: str
    is_processing: bool
    processing_stage: str
    processing_progress: int
    processed_chunks: int
    failed_chunks: int
    total_chunks: int
    error: str | None = None
    category: str | None = None
    mind_map: Dict[str, Any] | None = None
