from __future__ import annotations

from datetime import datetime
from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from studyforge.core.database import Base


class ChunkPart(Base):
    __tablename__ = "chunk_parts"
    # 不对 (deck_id, chunk_index, part_index) 做唯一约束：重复投递需要能被计数发现
    __table_args__ = (Index("ix_chunk_parts_deck_chunk", "deck_id", "chunk_index"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    deck_id: Mapped[str] = mapped_column(String, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    part_index: Mapped[int] = mapped_column(Integer, nullable=False)
    total_parts: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
