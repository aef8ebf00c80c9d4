from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from studyforge.core.schemas import PageRange


@dataclass(frozen=True)
class PromptCatalog:
    default: str
    prompts: Dict[str, str]


_CATALOG_CACHE: Tuple[PromptCatalog, float] | None = None

GUIDELINES = """IMPORTANT GUIDELINES:
1. Focus on the content in this section of the document
2. Each item must be self-contained and valuable on its own
3. Ensure progressive difficulty within the selected level
4. Include practical examples and real-world applications where relevant
5. Break down complex topics into digestible chunks
6. For MCQs:
   - All options should be plausible
   - Avoid obvious incorrect answers
   - Include clear explanations for correct answers
7. For FRQs:
   - Provide multiple acceptable answers where appropriate
   - Include clear evaluation criteria in explanations
   - Make answers objectively assessable"""

OUTPUT_CONTRACT = """Return only valid JSON with this shape:
{"summary": str, "category": str,
 "flashcards": [{"front": str, "back": str, "topic": str}],
 "mcqs": [{"question": str, "options": [str], "correctOptionIndex": int, "explanation": str, "topic": str, "difficulty": "easy"|"medium"|"hard"}],
 "frqs": [{"question": str, "answers": [str], "caseSensitive": bool, "explanation": str, "topic": str, "difficulty": "easy"|"medium"|"hard"}]}"""

_DIFFICULTY_LEVELS = {"low": "easy", "moderate": "medium", "high": "hard"}


def _catalog_path() -> Path:
    package_dir = Path(__file__).resolve().parents[1]
    return package_dir / "prompt.txt"


def _parse_prompt_catalog(raw: str) -> PromptCatalog:
    default = "moderate"
    prompts: Dict[str, str] = {}
    current_id: Optional[str] = None
    collecting = False
    buffer: list[str] = []

    for line in raw.splitlines():
        stripped = line.strip()
        if stripped.startswith("default:"):
            default = stripped.split(":", 1)[1].strip() or default
            continue
        if stripped.startswith("- id:"):
            if current_id and buffer:
                prompts[current_id] = "\n".join(buffer).strip()
            current_id = stripped.split(":", 1)[1].strip()
            collecting = False
            buffer = []
            continue
        if current_id and stripped.startswith("prompt:"):
            collecting = True
            buffer = []
            continue
        if collecting:
            # Prompt body lines are indented in catalog; keep relative spacing.
            if line.startswith("      "):
                buffer.append(line[6:])
            elif not stripped:
                buffer.append("")
            else:
                collecting = False
            continue

    if current_id and buffer:
        prompts[current_id] = "\n".join(buffer).strip()

    return PromptCatalog(default=default, prompts=prompts)


def _load_catalog() -> PromptCatalog:
    global _CATALOG_CACHE
    path = _catalog_path()
    try:
        stat = path.stat()
    except FileNotFoundError:
        return PromptCatalog(default="moderate", prompts={})
    mtime = stat.st_mtime
    if _CATALOG_CACHE and _CATALOG_CACHE[1] == mtime:
        return _CATALOG_CACHE[0]
    raw = path.read_text(encoding="utf-8", errors="ignore")
    catalog = _parse_prompt_catalog(raw)
    _CATALOG_CACHE = (catalog, mtime)
    return catalog


# 用户选择的难度 -> 内容难度等级
def difficulty_level(difficulty: str | None) -> str:
    return _DIFFICULTY_LEVELS.get((difficulty or "").lower(), "medium")


# 根据难度构建生成提示词（PDF 且指定页码范围时追加页码约束）
def build_difficulty_prompt(
    difficulty: str,
    page_range: PageRange | None = None,
    file_type: str | None = None,
) -> str:
    catalog = _load_catalog()
    template = catalog.prompts.get(difficulty) or catalog.prompts.get(catalog.default)
    if not template:
        # Hard fallback to avoid crash if catalog missing.
        template = "You are an expert study material creator.\n\n{guidelines}"
    prompt = template.replace("{guidelines}", GUIDELINES)
    if page_range and file_type and "pdf" in file_type.lower():
        prompt = f"{prompt}\n\nFocus only on pages {page_range.start} to {page_range.end} of the PDF."
    return prompt


def build_chunk_prompt(chunk_index: int, total_chunks: int, difficulty_prompt: str) -> str:
    return (
        f"Process part {chunk_index + 1} of {total_chunks} of the document.\n\n"
        f"{difficulty_prompt}\n\n{OUTPUT_CONTRACT}"
    )


def build_mind_map_prompt(summaries: str, topics: Iterable[str]) -> str:
    topic_lines = "\n".join(topics)
    return (
        "Generate a comprehensive mind map based on these chunk summaries and key topics:\n\n"
        f"Summaries:\n{summaries}\n\n"
        f"Key Topics:\n{topic_lines}\n\n"
        "Create a mind map that shows the relationships between these concepts.\n"
        'Return only valid JSON: {"nodes": [{"id": str, "label": str, "type": "main"|"subtopic"|"detail"}], '
        '"connections": [{"source": str, "target": str, "label": str, '
        '"type": "hierarchical"|"related"|"dependency"}]}'
    )
