from __future__ import annotations

from datetime import datetime
from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from studyforge.core.database import Base


class StudyContent(Base):
    __tablename__ = "study_contents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    study_material_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    difficulty_level: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class FlashcardContent(Base):
    __tablename__ = "flashcard_contents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    study_content_id: Mapped[str] = mapped_column(String, index=True, unique=True, nullable=False)
    front: Mapped[str] = mapped_column(Text, nullable=False)
    back: Mapped[str] = mapped_column(Text, nullable=False)
    topic: Mapped[str | None] = mapped_column(String, nullable=True)


class McqContent(Base):
    __tablename__ = "mcq_contents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    study_content_id: Mapped[str] = mapped_column(String, index=True, unique=True, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    correct_option_index: Mapped[int] = mapped_column(Integer, nullable=False)
    explanation: Mapped[str] = mapped_column(Text, default="")
    topic: Mapped[str | None] = mapped_column(String, nullable=True)


class FrqContent(Base):
    __tablename__ = "frq_contents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    study_content_id: Mapped[str] = mapped_column(String, index=True, unique=True, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    answers: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    case_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    explanation: Mapped[str] = mapped_column(Text, default="")
    topic: Mapped[str | None] = mapped_column(String, nullable=True)


class DeckContent(Base):
    __tablename__ = "deck_contents"
    __table_args__ = (UniqueConstraint("deck_id", "order", name="uq_deck_content_order"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    deck_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    study_content_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
