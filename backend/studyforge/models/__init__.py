from studyforge.models.chunk_part import ChunkPart
from studyforge.models.deck import Deck
from studyforge.models.processed_chunk import ProcessedChunk
from studyforge.models.study_content import (
    DeckContent,
    FlashcardContent,
    FrqContent,
    McqContent,
    StudyContent,
)
from studyforge.models.study_material import StudyMaterial

__all__ = [
    "ChunkPart",
    "Deck",
    "DeckContent",
    "FlashcardContent",
    "FrqContent",
    "McqContent",
    "ProcessedChunk",
    "StudyContent",
    "StudyMaterial",
]
