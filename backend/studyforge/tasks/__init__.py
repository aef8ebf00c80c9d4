from studyforge.tasks.pipeline import (
    enrich_deck,
    process_chunk_part,
    publish_job,
    start_deck_processing,
)

# 对外导出任务函数
__all__ = [
    "enrich_deck",
    "process_chunk_part",
    "publish_job",
    "start_deck_processing",
]
