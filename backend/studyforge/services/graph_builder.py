from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from studyforge.core.schemas import MindMap
from studyforge.models import (
    DeckContent,
    FlashcardContent,
    FrqContent,
    McqContent,
    ProcessedChunk,
    StudyContent,
)

STOP_WORDS = {"the", "a", "an", "in", "on", "at", "for", "to", "of", "and", "is", "are"}
SUMMARY_FALLBACK_CHARS = 2000


@dataclass(frozen=True)
class MindMapInputs:
    summaries: str
    topics: List[str]
    item_count: int


# 从题干中取前三个有效词作为主题
def extract_topic(text: str) -> str:
    cleaned = re.sub(r"[^\w\s]", "", text).lower()
    words = [word for word in cleaned.split() if len(word) > 3 and word not in STOP_WORDS]
    return " ".join(words[:3]) or text[:15]


# 汇总 deck 已写入的内容：chunk 摘要 + 主题集合
def build_mind_map_inputs(db: Session, deck_id: str) -> MindMapInputs:
    summaries = [
        summary.strip()
        for summary in db.execute(
            select(ProcessedChunk.summary)
            .where(ProcessedChunk.deck_id == deck_id)
            .order_by(ProcessedChunk.chunk_index)
        ).scalars()
        if summary and summary.strip()
    ]

    base = (
        select(FlashcardContent, McqContent, FrqContent)
        .select_from(StudyContent)
        .join(DeckContent, DeckContent.study_content_id == StudyContent.id)
        .outerjoin(FlashcardContent, FlashcardContent.study_content_id == StudyContent.id)
        .outerjoin(McqContent, McqContent.study_content_id == StudyContent.id)
        .outerjoin(FrqContent, FrqContent.study_content_id == StudyContent.id)
        .where(DeckContent.deck_id == deck_id)
        .order_by(DeckContent.order)
    )

    topics: Dict[str, None] = {}
    flashcard_lines: List[str] = []
    item_count = 0
    for card, mcq, frq in db.execute(base).all():
        if card is not None:
            item_count += 1
            flashcard_lines.append(f"{card.front}: {card.back}")
            topics.setdefault(card.topic or extract_topic(card.front), None)
        elif mcq is not None:
            item_count += 1
            topics.setdefault(mcq.topic or extract_topic(mcq.question), None)
        elif frq is not None:
            item_count += 1
            topics.setdefault(frq.topic or extract_topic(frq.question), None)

    text = "\n\n".join(summaries)
    if not text:
        # 没有摘要时用 flashcard 文本兜底
        text = "\n".join(flashcard_lines)[:SUMMARY_FALLBACK_CHARS]
    return MindMapInputs(summaries=text, topics=[topic for topic in topics if topic], item_count=item_count)


# 节点按 id 去重，丢弃端点不存在的连线与重复连线
def normalize_concept_graph(mind_map: MindMap) -> Dict[str, Any]:
    node_map: Dict[str, Dict[str, Any]] = {}
    for node in mind_map.nodes:
        node_id = node.id.strip()
        if node_id and node_id not in node_map:
            node_map[node_id] = {"id": node_id, "label": node.label.strip() or node_id, "type": node.type}

    seen: set[tuple[str, str, str]] = set()
    connections: List[Dict[str, Any]] = []
    for conn in mind_map.connections:
        source, target = conn.source.strip(), conn.target.strip()
        if source not in node_map or target not in node_map or source == target:
            continue
        key = (source, target, conn.type)
        if key in seen:
            continue
        seen.add(key)
        connections.append({"source": source, "target": target, "label": conn.label.strip(), "type": conn.type})

    return {"nodes": list(node_map.values()), "connections": connections}
