from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Tuple


# Deck 处理阶段（对外可见，客户端轮询读取）
class ProcessingStage(str, Enum):
    QUEUED = "QUEUED"
    CHUNKING = "CHUNKING"
    QUEUING_CHUNKS = "QUEUING_CHUNKS"
    PROCESSING_CHUNKS = "PROCESSING_CHUNKS"
    SAVING = "SAVING"
    COMPLETED = "COMPLETED"
    PARTIAL_COMPLETION = "PARTIAL_COMPLETION"
    ERROR = "ERROR"


TERMINAL_STAGES: FrozenSet[str] = frozenset(
    {
        ProcessingStage.COMPLETED.value,
        ProcessingStage.PARTIAL_COMPLETION.value,
        ProcessingStage.ERROR.value,
    }
)

# chunk 结果可以入库的阶段（start 任务可能还没来得及切到 PROCESSING_CHUNKS）
ACCEPTING_STAGES: FrozenSet[str] = frozenset(
    {
        ProcessingStage.QUEUING_CHUNKS.value,
        ProcessingStage.PROCESSING_CHUNKS.value,
    }
)

# start 任务可以（重新）执行的阶段；进入 QUEUING_CHUNKS 后重投会产生重复 part
RESTARTABLE_STAGES: FrozenSet[str] = frozenset(
    {
        ProcessingStage.QUEUED.value,
        ProcessingStage.CHUNKING.value,
    }
)

# 阶段 -> 进度区间（闭区间）；终态 ERROR / PARTIAL_COMPLETION 冻结当前进度
STAGE_BANDS: Dict[str, Tuple[int, int]] = {
    ProcessingStage.QUEUED.value: (0, 5),
    ProcessingStage.CHUNKING.value: (5, 10),
    ProcessingStage.QUEUING_CHUNKS.value: (10, 15),
    ProcessingStage.PROCESSING_CHUNKS.value: (15, 85),
    ProcessingStage.SAVING.value: (85, 85),
    ProcessingStage.COMPLETED.value: (100, 100),
}

PROCESSING_FLOOR, PROCESSING_CEILING = STAGE_BANDS[ProcessingStage.PROCESSING_CHUNKS.value]
PROCESSING_SPAN = PROCESSING_CEILING - PROCESSING_FLOOR


def stage_entry_progress(stage: ProcessingStage) -> int:
    return STAGE_BANDS[stage.value][0]


def is_terminal(stage: str | None) -> bool:
    return stage in TERMINAL_STAGES
