from __future__ import annotations

import random
from collections import defaultdict

import pytest

from conftest import FakeGenerator, FakeMindMap, chunk_result, start_payload
from studyforge.core.errors import JobValidationError, PersistenceExhaustedError, PublishError
from studyforge.core.schemas import ChunkResult
from studyforge.models import ChunkPart, Deck, ProcessedChunk, StudyContent, StudyMaterial
from studyforge.services import deck_processor
from studyforge.services.deck_processor import (
    JOB_CHUNK_PART,
    JOB_ENRICH,
    JOB_START,
    handle_chunk_part,
    handle_enrich,
    handle_start,
)


def _deck(session_factory, deck_id="deck-1"):
    session = session_factory()
    try:
        return session.get(Deck, deck_id)
    finally:
        session.close()


def _count(session_factory, model):
    session = session_factory()
    try:
        return session.query(model).count()
    finally:
        session.close()


def _bump_run(session_factory, deck_id="deck-1"):
    session = session_factory()
    try:
        deck = session.get(Deck, deck_id)
        deck.run_id += 1
        session.commit()
    finally:
        session.close()


def _deliver(messages, deps, seed=None):
    ordered = list(messages)
    if seed is not None:
        random.Random(seed).shuffle(ordered)
    return [handle_chunk_part(message, deps) for message in ordered]


class TestFanOut:
    def test_single_message_chunks_complete_the_deck(self, session_factory, make_deck, make_deps, publisher, generator):
        make_deck()
        deps = make_deps()

        result = handle_start(start_payload(), deps)

        assert result["status"] == "dispatched"
        assert result["total_chunks"] == 3
        deck = _deck(session_factory)
        assert deck.processing_stage == "PROCESSING_CHUNKS"
        assert deck.processing_progress == 15
        messages = publisher.of_kind(JOB_CHUNK_PART)
        assert [message["chunkIndex"] for message in messages] == [0, 1, 2]
        assert all("chunk" in message and "chunkPart" not in message for message in messages)
        assert messages[-1]["isLastChunk"] is True

        _deliver(messages, deps, seed=3)

        deck = _deck(session_factory)
        assert deck.processing_stage == "COMPLETED"
        assert (deck.processed_chunks, deck.total_chunks, deck.processing_progress) == (3, 3, 100)
        assert deck.is_processing is False
        assert deck.category == "biology"
        assert sorted(index for index, _, _ in generator.calls) == [0, 1, 2]
        assert {total for _, total, _ in generator.calls} == {3}
        assert _count(session_factory, StudyContent) == 6
        assert len(publisher.of_kind(JOB_ENRICH)) == 1

    def test_out_of_order_parts_are_reassembled(self, session_factory, make_deck, make_deps, publisher):
        make_deck()
        deps = make_deps(part_size_bytes=200)
        handle_start(start_payload(), deps)

        messages = publisher.of_kind(JOB_CHUNK_PART)
        parts_per_chunk = defaultdict(int)
        for message in messages:
            assert "chunkPart" in message
            parts_per_chunk[message["chunkIndex"]] += 1
        assert all(count > 1 for count in parts_per_chunk.values())

        results = _deliver(messages, deps, seed=11)

        assert sum(1 for item in results if item.get("status") == "receiving") == len(messages) - 3
        deck = _deck(session_factory)
        assert deck.processing_stage == "COMPLETED"
        assert deck.processed_chunks == 3
        assert _count(session_factory, ChunkPart) == 0

    def test_redelivered_start_is_a_no_op(self, make_deck, make_deps, publisher):
        make_deck()
        deps = make_deps()
        handle_start(start_payload(), deps)
        published = len(publisher.messages)

        assert handle_start(start_payload(), deps)["status"] == "skipped"
        assert len(publisher.messages) == published

    def test_redelivered_chunk_is_acknowledged_once(self, session_factory, make_deck, make_deps, publisher, generator):
        make_deck()
        deps = make_deps()
        handle_start(start_payload(), deps)
        first, second, third = publisher.of_kind(JOB_CHUNK_PART)

        handle_chunk_part(first, deps)
        assert handle_chunk_part(first, deps)["status"] == "duplicate"
        handle_chunk_part(second, deps)
        handle_chunk_part(third, deps)
        assert handle_chunk_part(third, deps)["status"] == "skipped"

        deck = _deck(session_factory)
        assert deck.processing_stage == "COMPLETED"
        assert deck.processed_chunks == 3
        assert len(generator.calls) == 3
        assert len(publisher.of_kind(JOB_ENRICH)) == 1

    def test_duplicate_part_is_fatal_and_leaves_no_rows(self, session_factory, make_deck, make_deps, publisher):
        make_deck()
        deps = make_deps(part_size_bytes=200)
        handle_start(start_payload(), deps)
        messages = publisher.of_kind(JOB_CHUNK_PART)
        chunk_zero = [message for message in messages if message["chunkIndex"] == 0]

        _deliver([chunk_zero[0]] + messages, deps)

        deck = _deck(session_factory)
        assert deck.processing_stage == "ERROR"
        assert "part" in deck.error
        assert deck.is_processing is False
        assert _count(session_factory, ChunkPart) == 0
        assert publisher.of_kind(JOB_ENRICH) == []

    def test_empty_generation_result_fails_the_deck(self, session_factory, make_deck, make_deps, publisher, errors):
        make_deck()
        deps = make_deps(generate=FakeGenerator(empty_chunks={1}))
        handle_start(start_payload(), deps)

        results = _deliver(publisher.of_kind(JOB_CHUNK_PART), deps)

        deck = _deck(session_factory)
        assert deck.processing_stage == "ERROR"
        assert deck.error == "Failed to generate valid content for chunk 2/3"
        assert results[2]["status"] == "skipped"
        assert deck.processed_chunks == 1
        assert publisher.of_kind(JOB_ENRICH) == []
        assert len(errors.reported) == 1
        session = session_factory()
        try:
            material = session.get(StudyMaterial, "mat-1")
            assert material.status == "error"
        finally:
            session.close()

    def test_generation_exception_fails_the_deck(self, session_factory, make_deck, make_deps, publisher):
        make_deck()
        deps = make_deps(generate=FakeGenerator(failing_chunks={0}))
        handle_start(start_payload(), deps)

        _deliver(publisher.of_kind(JOB_CHUNK_PART), deps)

        assert _deck(session_factory).error == "Failed to generate valid content for chunk 1/3"

    def test_exhausted_persistence_is_a_partial_completion(self, session_factory, make_deck, make_deps, publisher, errors, monkeypatch):
        real = deck_processor.persist_chunk_content

        def persist(session_factory, deck_id, study_material_id, chunk_index, *args, **kwargs):
            if chunk_index == 1:
                raise PersistenceExhaustedError("Failed to save content for chunk 2", attempts=3, deck_id=deck_id)
            return real(session_factory, deck_id, study_material_id, chunk_index, *args, **kwargs)

        monkeypatch.setattr(deck_processor, "persist_chunk_content", persist)
        make_deck()
        deps = make_deps()
        handle_start(start_payload(), deps)

        _deliver(publisher.of_kind(JOB_CHUNK_PART), deps)

        deck = _deck(session_factory)
        assert deck.processing_stage == "PARTIAL_COMPLETION"
        assert (deck.processed_chunks, deck.failed_chunks) == (2, 1)
        assert deck.is_processing is False
        assert publisher.of_kind(JOB_ENRICH) == []
        assert isinstance(errors.reported[0][0], PersistenceExhaustedError)

    def test_publish_failure_fails_the_deck(self, session_factory, make_deck, make_deps):
        def broken(kind, payload):
            raise PublishError("Failed to enqueue after 3 attempts")

        make_deck()
        result = handle_start(start_payload(), make_deps(publish=broken))

        assert result["error"] == "PublishError"
        assert _deck(session_factory).processing_stage == "ERROR"


class TestStartValidation:
    def test_missing_material(self, session_factory, make_deck, make_deps):
        make_deck(with_material=False)
        result = handle_start(start_payload(), make_deps())
        assert result["error"] == "STUDY_MATERIAL_NOT_FOUND"
        deck = _deck(session_factory)
        assert (deck.processing_stage, deck.error) == ("ERROR", "Study material not found")

    def test_missing_file(self, session_factory, make_deck, make_deps):
        make_deck()
        handle_start(start_payload(file_path="missing.pdf"), make_deps())
        deck = _deck(session_factory)
        assert deck.processing_stage == "ERROR"
        assert deck.error == "Failed to access uploaded file"

    def test_invalid_payload_with_known_deck(self, session_factory, make_deck, make_deps, errors):
        make_deck()
        payload = start_payload()
        del payload["filePath"]

        result = handle_start(payload, make_deps())

        assert result["error"] == "INVALID_PAYLOAD"
        deck = _deck(session_factory)
        assert deck.processing_stage == "ERROR"
        assert deck.error.startswith("Invalid start job")
        reported, context = errors.reported[0]
        assert isinstance(reported, JobValidationError)
        assert context == {"deck_id": "deck-1", "job": "start"}

    def test_invalid_payload_without_deck_mutates_nothing(self, session_factory, make_deck, make_deps):
        make_deck()
        payload = start_payload()
        del payload["deckId"]

        assert handle_start(payload, make_deps())["error"] == "INVALID_PAYLOAD"
        assert _deck(session_factory).processing_stage == "QUEUED"

    def test_unknown_deck(self, make_deps):
        assert handle_start(start_payload(deck_id="nope"), make_deps())["error"] == "DECK_NOT_FOUND"


class TestInline:
    def test_small_document_runs_inline(self, session_factory, make_deck, make_deps, publisher, generator):
        make_deck()
        deps = make_deps(processing_strategy="auto")

        result = handle_start(start_payload(file_path="short.pdf"), deps)

        assert result["status"] == "inline"
        assert result["final_stage"] == "COMPLETED"
        assert publisher.of_kind(JOB_CHUNK_PART) == []
        assert len(publisher.of_kind(JOB_ENRICH)) == 1
        deck = _deck(session_factory)
        assert (deck.processing_stage, deck.processing_progress, deck.processed_chunks) == ("COMPLETED", 100, 2)
        assert sorted(index for index, _, _ in generator.calls) == [0, 1]

    def test_inline_batches_fail_fast(self, session_factory, make_deck, make_deps, publisher):
        make_deck()
        generator = FakeGenerator(empty_chunks={2})
        deps = make_deps(processing_strategy="inline", inline_batch_size=2, generate=generator)

        handle_start(start_payload(), deps)

        deck = _deck(session_factory)
        assert deck.processing_stage == "ERROR"
        assert deck.error == "Failed to generate valid content for chunk 3/3"
        assert deck.processed_chunks == 2
        assert publisher.of_kind(JOB_ENRICH) == []

    def test_inline_and_fanout_reach_the_same_state(self, session_factory, make_deck, make_deps, publisher):
        make_deck("deck-1", "mat-1")
        make_deck("deck-2", "mat-2")
        handle_start(start_payload("deck-2", studyMaterialId="mat-2"), make_deps(processing_strategy="inline"))
        handle_start(start_payload("deck-1"), make_deps())
        _deliver(publisher.of_kind(JOB_CHUNK_PART), make_deps())

        fanned, inline = _deck(session_factory, "deck-1"), _deck(session_factory, "deck-2")
        for field in ("processing_stage", "processing_progress", "processed_chunks", "total_chunks", "category", "is_processing"):
            assert getattr(fanned, field) == getattr(inline, field)


class TestEnrich:
    def _completed_deck(self, make_deck, make_deps, publisher, **deps_overrides):
        make_deck()
        deps = make_deps(**deps_overrides)
        handle_start(start_payload(), deps)
        _deliver(publisher.of_kind(JOB_CHUNK_PART), deps)
        return deps, publisher.of_kind(JOB_ENRICH)[0]

    def test_mind_map_is_attached(self, session_factory, make_deck, make_deps, publisher):
        mind_map = FakeMindMap()
        deps, message = self._completed_deck(make_deck, make_deps, publisher, generate_mind_map=mind_map)

        result = handle_enrich(message, deps)

        assert result["status"] == "enriched"
        graph = _deck(session_factory).mind_map
        assert [node["id"] for node in graph["nodes"]] == ["root", "light"]
        assert graph["connections"] == [{"source": "root", "target": "light", "label": "", "type": "hierarchical"}]
        summaries, topics, ai_model = mind_map.calls[0]
        assert "Summary of chunk 1" in summaries
        assert "chunk 1" in topics
        assert ai_model == "standard"

    def test_failure_leaves_deck_completed(self, session_factory, make_deck, make_deps, publisher, errors):
        deps, message = self._completed_deck(make_deck, make_deps, publisher, generate_mind_map=FakeMindMap(fail=True))

        result = handle_enrich(message, deps)

        assert result["error"] == "ENRICH_FAILED"
        deck = _deck(session_factory)
        assert deck.processing_stage == "COMPLETED"
        assert deck.mind_map is None
        assert len(errors.reported) == 1

    def test_skipped_unless_completed(self, make_deck, make_deps):
        make_deck(processing_stage="PROCESSING_CHUNKS")
        message = {"deckId": "deck-1", "studyMaterialId": "mat-1", "runId": 0, "aiModel": "standard"}
        assert handle_enrich(message, make_deps())["status"] == "skipped"


@pytest.mark.parametrize("stage", ["COMPLETED", "ERROR", "PARTIAL_COMPLETION"])
def test_chunk_for_terminal_deck_is_dropped(stage, session_factory, make_deck, make_deps, generator):
    make_deck(processing_stage=stage, total_chunks=1)
    message = {
        "deckId": "deck-1",
        "studyMaterialId": "mat-1",
        "runId": 0,
        "chunkIndex": 0,
        "totalChunks": 1,
        "chunkPart": "QUJD",
        "partIndex": 0,
        "totalParts": 2,
        "difficultyPrompt": "prompt",
        "aiModel": "standard",
    }
    assert handle_chunk_part(message, make_deps())["status"] == "skipped"
    assert _count(session_factory, ChunkPart) == 0
    assert generator.calls == []


class TestRequeue:
    def test_chunk_from_superseded_run_cannot_finish_the_new_run(
        self, client, session_factory, make_deck, make_deps, publisher, generator
    ):
        make_deck()
        first_run = make_deps(generate=FakeGenerator(empty_chunks={0}))
        handle_start(start_payload(), first_run)
        old_messages = publisher.of_kind(JOB_CHUNK_PART)
        handle_chunk_part(old_messages[0], first_run)
        assert _deck(session_factory).processing_stage == "ERROR"

        response = client.post("/api/deck-processing", json=start_payload(pageRange={"start": 1, "end": 5}))
        assert response.status_code == 200
        deps = make_deps()
        handle_start(publisher.of_kind(JOB_START)[-1], deps)
        new_messages = [message for message in publisher.of_kind(JOB_CHUNK_PART) if message["runId"] == 1]
        assert len(new_messages) == 1

        assert handle_chunk_part(old_messages[2], deps) == {"status": "skipped", "reason": "stale_run"}
        assert handle_chunk_part(old_messages[0], deps) == {"status": "skipped", "reason": "stale_run"}
        assert _deck(session_factory).processing_stage == "PROCESSING_CHUNKS"

        result = handle_chunk_part(new_messages[0], deps)

        assert result["final_stage"] == "COMPLETED"
        deck = _deck(session_factory)
        assert (deck.processed_chunks, deck.total_chunks, deck.run_id) == (1, 1, 1)
        assert generator.calls == [(0, 1, "standard")]
        session = session_factory()
        try:
            assert [row.chunk_index for row in session.query(ProcessedChunk)] == [0]
        finally:
            session.close()

    def test_start_from_superseded_run_is_skipped(self, client, session_factory, make_deck, make_deps, publisher):
        make_deck(processing_stage="ERROR")
        client.post("/api/deck-processing", json=start_payload())

        result = handle_start(start_payload(runId=0), make_deps())

        assert result == {"status": "skipped", "reason": "stale_run"}
        deck = _deck(session_factory)
        assert (deck.processing_stage, deck.run_id) == ("QUEUED", 1)
        assert publisher.of_kind(JOB_CHUNK_PART) == []

    @pytest.mark.parametrize("run_id,chunk_index,total_chunks", [(1, 0, 3), (0, 1, 2), (0, 4, 5)])
    def test_chunk_not_matching_current_run_is_dropped(
        self, run_id, chunk_index, total_chunks, session_factory, make_deck, make_deps, generator
    ):
        make_deck(processing_stage="PROCESSING_CHUNKS", total_chunks=3)
        message = {
            "deckId": "deck-1",
            "studyMaterialId": "mat-1",
            "runId": run_id,
            "chunkIndex": chunk_index,
            "totalChunks": total_chunks,
            "chunk": "QUJD",
            "difficultyPrompt": "prompt",
            "aiModel": "standard",
        }

        assert handle_chunk_part(message, make_deps())["reason"] == "stale_run"
        assert generator.calls == []
        deck = _deck(session_factory)
        assert (deck.processing_stage, deck.processed_chunks) == ("PROCESSING_CHUNKS", 0)

    def test_content_generated_before_requeue_is_not_counted(self, session_factory, make_deck, make_deps, publisher):
        def generate_then_requeue(chunk, prompt, ai_model):
            _bump_run(session_factory)
            return chunk_result("old run")

        make_deck()
        deps = make_deps(generate=generate_then_requeue)
        handle_start(start_payload(), deps)

        result = handle_chunk_part(publisher.of_kind(JOB_CHUNK_PART)[0], deps)

        assert result["status"] == "rejected"
        assert _deck(session_factory).processed_chunks == 0
        assert _count(session_factory, StudyContent) == 0
        assert _count(session_factory, ProcessedChunk) == 0

    def test_failure_after_requeue_leaves_new_run_alone(self, session_factory, make_deck, make_deps, publisher):
        def generate_then_requeue(chunk, prompt, ai_model):
            _bump_run(session_factory)
            return ChunkResult()

        make_deck()
        deps = make_deps(generate=generate_then_requeue)
        handle_start(start_payload(), deps)

        result = handle_chunk_part(publisher.of_kind(JOB_CHUNK_PART)[0], deps)

        assert result["error"] == "GenerationError"
        deck = _deck(session_factory)
        assert (deck.processing_stage, deck.error) == ("PROCESSING_CHUNKS", None)

    def test_enrich_from_superseded_run_is_skipped(self, session_factory, make_deck, make_deps, publisher):
        mind_map = FakeMindMap()
        make_deck()
        deps = make_deps(generate_mind_map=mind_map)
        handle_start(start_payload(), deps)
        _deliver(publisher.of_kind(JOB_CHUNK_PART), deps)
        message = publisher.of_kind(JOB_ENRICH)[0]
        assert message["runId"] == 0
        _bump_run(session_factory)

        assert handle_enrich(message, deps) == {"status": "skipped", "reason": "stale_run"}
        assert mind_map.calls == []
        assert _deck(session_factory).mind_map is None
