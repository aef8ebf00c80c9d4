from __future__ import annotations

from datetime import datetime
from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from studyforge.core.database import Base


class Deck(Base):
    __tablename__ = "decks"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    study_material_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    title: Mapped[str] = mapped_column(String, default="")
    is_processing: Mapped[bool] = mapped_column(Boolean, default=False)
    processing_stage: Mapped[str] = mapped_column(String, default="QUEUED")
    processing_progress: Mapped[int] = mapped_column(Integer, default=0)
    total_chunks: Mapped[int] = mapped_column(Integer, default=0)
    # 只能通过数据库原子自增修改
    processed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    failed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    # 每个 deck 的排序号序列，写入内容时按块预留
    content_seq: Mapped[int] = mapped_column(Integer, default=0)
    # 每次重新入队 +1；消息携带 runId，旧轮次的消息直接丢弃
    run_id: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    mind_map: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
