"""Exception hierarchy for the deck processing pipeline.

Every fatal condition a job can hit is a :class:`PipelineError`; the
orchestrator turns it into a deck ``error`` string, so ``str(exc)`` must be
readable by an end user polling the deck.
"""

from __future__ import annotations


class PipelineError(Exception):
    def __init__(self, message: str, deck_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.deck_id = deck_id

    def __str__(self) -> str:
        return self.message


class JobValidationError(PipelineError):
    pass


class FileRetrievalError(PipelineError):
    pass


class ChunkingError(PipelineError):
    def __init__(self, message: str, page: int | None = None, deck_id: str | None = None) -> None:
        super().__init__(message, deck_id=deck_id)
        self.page = page


class PartDecodeError(PipelineError):
    pass


class PartCountMismatchError(PipelineError):
    def __init__(self, message: str, expected: int, actual: int, deck_id: str | None = None) -> None:
        super().__init__(message, deck_id=deck_id)
        self.expected = expected
        self.actual = actual


class GenerationError(PipelineError):
    def __init__(self, message: str, chunk_index: int | None = None, deck_id: str | None = None) -> None:
        super().__init__(message, deck_id=deck_id)
        self.chunk_index = chunk_index


class PersistenceExhaustedError(PipelineError):
    def __init__(self, message: str, attempts: int, deck_id: str | None = None) -> None:
        super().__init__(message, deck_id=deck_id)
        self.attempts = attempts


class PublishError(PipelineError):
    pass
