from __future__ import annotations

import os
import re
import threading
from typing import Any, Dict, List, Tuple

# 测试进程使用内存数据库作为全局引擎，避免在工作目录创建文件
os.environ.setdefault("DATABASE_URL", "sqlite://")

import fitz
import pytest
from fastapi.testclient import TestClient

from studyforge.api.routes.deck_processing import get_publisher
from studyforge.core.database import build_engine, build_session_factory, get_db, init_db
from studyforge.core.schemas import ChunkResult, FlashcardItem, McqItem, MindMap
from studyforge.main import app
from studyforge.models import Deck, StudyMaterial
from studyforge.services.deck_processor import PipelineDeps

_PART_RE = re.compile(r"Process part (\d+) of (\d+)")


def build_pdf(pages: int) -> bytes:
    doc = fitz.open()
    for idx in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"Page {idx + 1}: photosynthesis converts light energy")
    data = doc.tobytes()
    doc.close()
    return data


def chunk_result(label: str, category: str = "biology") -> ChunkResult:
    return ChunkResult(
        summary=f"Summary of {label}",
        category=category,
        flashcards=[FlashcardItem(front=f"What happens in {label}?", back="Light is absorbed", topic=label)],
        mcqs=[
            McqItem(
                question=f"Which pigment matters in {label}?",
                options=["Chlorophyll", "Keratin"],
                correctOptionIndex=0,
                topic=label,
            )
        ],
    )


class FakeGenerator:
    """Records calls; returns one flashcard + one mcq per chunk unless told otherwise."""

    def __init__(self, empty_chunks=(), failing_chunks=(), categories=None):
        self.empty_chunks = set(empty_chunks)
        self.failing_chunks = set(failing_chunks)
        self.categories = categories or {}
        self.calls: List[Tuple[int, int, str]] = []
        self._lock = threading.Lock()

    def __call__(self, chunk: bytes, prompt: str, ai_model: str) -> ChunkResult:
        assert chunk.startswith(b"%PDF")
        match = _PART_RE.search(prompt)
        index, total = int(match.group(1)) - 1, int(match.group(2))
        with self._lock:
            self.calls.append((index, total, ai_model))
        if index in self.failing_chunks:
            raise RuntimeError("model unavailable")
        if index in self.empty_chunks:
            return ChunkResult()
        return chunk_result(f"chunk {index + 1}", self.categories.get(index, "biology"))


class FakeMindMap:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Tuple[str, List[str], str]] = []

    def __call__(self, summaries: str, topics: List[str], ai_model: str) -> MindMap:
        self.calls.append((summaries, list(topics), ai_model))
        if self.fail:
            raise RuntimeError("mind map model down")
        return MindMap.model_validate(
            {
                "nodes": [
                    {"id": "root", "label": "Photosynthesis", "type": "main"},
                    {"id": "light", "label": "Light", "type": "subtopic"},
                    {"id": "root", "label": "Duplicate", "type": "main"},
                ],
                "connections": [
                    {"source": "root", "target": "light", "type": "hierarchical"},
                    {"source": "root", "target": "missing", "type": "related"},
                ],
            }
        )


class FakePublisher:
    def __init__(self):
        self.messages: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, kind: str, payload: Dict[str, Any]) -> str:
        self.messages.append((kind, payload))
        return f"task-{len(self.messages)}"

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [payload for item_kind, payload in self.messages if item_kind == kind]


class FakeErrors:
    def __init__(self):
        self.reported: List[Tuple[BaseException, Dict[str, Any]]] = []

    def __call__(self, exc: BaseException, **context: Any) -> None:
        self.reported.append((exc, context))


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_deck(session_factory):
    def _make(deck_id: str = "deck-1", material_id: str = "mat-1", with_material: bool = True, **fields) -> str:
        session = session_factory()
        try:
            if with_material:
                session.add(StudyMaterial(id=material_id, title="Biology notes", file_path="notes.pdf", file_type="application/pdf"))
            session.add(Deck(id=deck_id, study_material_id=material_id, title="Biology", **fields))
            session.commit()
        finally:
            session.close()
        return deck_id

    return _make


@pytest.fixture
def pdf_files():
    return {"notes.pdf": build_pdf(12), "short.pdf": build_pdf(7)}


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def errors():
    return FakeErrors()


@pytest.fixture
def client(session_factory, publisher):
    def _db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_publisher] = lambda: publisher
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_deps(session_factory, pdf_files, generator, publisher, errors):
    def _read(path: str) -> bytes:
        from studyforge.core.errors import FileRetrievalError

        if path not in pdf_files:
            raise FileRetrievalError("Failed to access uploaded file")
        return pdf_files[path]

    def _make(**overrides) -> PipelineDeps:
        values = dict(
            session_factory=session_factory,
            generate=generator,
            generate_mind_map=FakeMindMap(),
            read_file=_read,
            publish=publisher,
            report_error=errors,
            sleep=lambda seconds: None,
            pages_per_chunk=5,
            part_size_bytes=500 * 1024,
            processing_strategy="fanout",
            inline_max_chunks=2,
            inline_batch_size=3,
        )
        values.update(overrides)
        return PipelineDeps(**values)

    return _make


def start_payload(deck_id: str = "deck-1", file_path: str = "notes.pdf", **extra) -> Dict[str, Any]:
    payload = {
        "deckId": deck_id,
        "studyMaterialId": "mat-1",
        "filePath": file_path,
        "metadata": {"originalName": "notes.pdf", "type": "application/pdf", "size": 1024},
        "aiModel": "standard",
        "difficulty": "moderate",
    }
    payload.update(extra)
    return payload
