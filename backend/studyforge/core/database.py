from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from studyforge.core.config import settings


# ORM 基类：所有模型继承它
class Base(DeclarativeBase):
    pass


# 根据连接串创建数据库引擎（SQLite 需要放开跨线程与锁等待）
def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )
    return create_engine(url, future=True, pool_pre_ping=True)


# 创建会话工厂
def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


def _build_engine() -> Engine:
    if settings.database_url:
        return build_engine(settings.database_url)
    settings.ensure_dirs()
    return build_engine(f"sqlite:///{settings.sqlite_path}")


# 全局数据库引擎
engine = _build_engine()
# 会话工厂
SessionLocal = build_session_factory(engine)


# 初始化数据库表
def init_db(bind: Engine | None = None) -> None:
    from studyforge.models import (  # noqa: F401
        chunk_part,
        deck,
        processed_chunk,
        study_content,
        study_material,
    )

    target = bind or engine
    # For PostgreSQL, multiple API workers can race on create_all(),
    # causing DDL conflicts (e.g. duplicate pg_type). Use an advisory lock to serialize.
    if target.dialect.name.startswith("postgres"):
        lock_id = 51170223
        with target.connect() as conn:
            conn.execute(text("SELECT pg_advisory_lock(:lock_id)"), {"lock_id": lock_id})
            try:
                Base.metadata.create_all(bind=conn)
            finally:
                conn.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id})
            conn.commit()
    else:
        Base.metadata.create_all(bind=target)


# FastAPI 依赖：获取数据库会话
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
