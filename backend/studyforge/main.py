from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studyforge.api.routes import deck_processing
from studyforge.core.config import settings
from studyforge.core.database import init_db
from studyforge.core.logging import configure_logging


# 应用入口：初始化 FastAPI 实例
app = FastAPI(title="StudyForge", root_path=settings.root_path or "")

# 配置 CORS，允许前端访问后端 API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册 deck 处理路由
api_prefix = settings.api_prefix
if api_prefix is None:
    api_prefix = "" if (settings.root_path or "").strip() else "/api"
api_prefix = api_prefix.rstrip("/")
app.include_router(deck_processing.router, prefix=f"{api_prefix}/deck-processing", tags=["deck-processing"])


# 启动事件：配置日志并创建数据库表结构
@app.on_event("startup")
def on_startup() -> None:
    configure_logging()
    init_db()
