from __future__ import annotations

import os
from pydantic_settings import BaseSettings


# 应用配置：统一管理环境变量与默认值
class Settings(BaseSettings):
    # 运行环境标识（便于日志、调试、区分开发/生产）
    app_env: str = "dev"
    # FastAPI 根路径（反向代理或子路径部署时使用）
    root_path: str = ""
    # API 前缀（兼容多版本路由或网关转发）
    api_prefix: str | None = None
    # 项目运行时数据根目录（上传文件/数据库等）
    data_dir: str = "data"
    # 上传文件存放目录（文件读取只允许落在该目录下）
    upload_dir: str = "data/uploads"
    # SQLite 数据库文件路径（默认本地文件）
    sqlite_path: str = "data/app.db"
    # 可选数据库连接串（优先用于 PostgreSQL 等外部数据库）
    database_url: str | None = None
    # 日志级别
    log_level: str = "INFO"

    # Celery Broker（任务队列）连接地址
    celery_broker_url: str = "redis://localhost:6379/0"
    # Celery 结果存储地址（用于回调或结果查询）
    celery_result_backend: str = "redis://localhost:6379/1"
    # 是否在当前进程内同步执行任务（单机调试 / 测试）
    celery_task_always_eager: bool = False

    # 当前默认 LLM 提供方（openai 兼容协议 或 gemini）
    llm_provider: str = "openai"
    # 通用 LLM API Key（OpenAI 兼容协议）
    llm_api_key: str | None = None
    # 通用 LLM 兼容接口地址（可替换为代理/自部署服务）
    llm_base_url: str = "https://api.openai.com/v1"
    # standard 档位模型
    llm_model: str = "gpt-4o-mini"
    # advanced 档位模型
    llm_advanced_model: str = "gpt-4o"
    # LLM 请求超时时间（秒）
    llm_timeout_seconds: int = 120
    # 单次生成的最大输出 Token
    llm_max_tokens: int = 4000
    # Gemini API Key（使用 Google Gemini 时必填）
    gemini_api_key: str | None = None
    # Gemini 模型名
    gemini_model: str = "gemini-2.5-flash"
    # 概念图谱生成时输入文本的 Token 上限
    mind_map_max_input_tokens: int = 12000

    # 每个 chunk 包含的页数
    pages_per_chunk: int = 5
    # 队列消息体上限：chunk 编码后超过该字节数时拆分为多个 part
    part_size_bytes: int = 500 * 1024
    # 任务投递最大尝试次数（线性退避）
    publish_max_attempts: int = 3
    # 任务投递退避基数（秒），第 n 次失败后等待 n * base
    publish_backoff_seconds: float = 1.0
    # 内容写入事务最大尝试次数（指数退避）
    persist_max_retries: int = 3
    # 内容写入退避基数（毫秒），第 n 次失败后等待 2^n * base
    persist_backoff_base_ms: int = 100
    # 内容写入事务超时（秒，仅 PostgreSQL 生效）
    persist_timeout_seconds: int = 60
    # inline 模式下每批并发生成的 chunk 数
    inline_batch_size: int = 3
    # 处理策略：auto / fanout / inline
    processing_strategy: str = "auto"
    # auto 模式下 chunk 数不超过该值时走 inline
    inline_max_chunks: int = 2

    # 允许跨域访问的前端地址列表（逗号分隔）
    cors_origins: str = "http://localhost:3000"

    # Pydantic Settings 行为配置
    class Config:
        env_file = (
            os.getenv("APP_ENV_FILE") or "config/.env",
            "backend/config/.env",
            ".env",
        )
        case_sensitive = False
        extra = "ignore" if os.getenv("APP_ENV", "dev").lower() == "dev" else "forbid"

    # 解析 CORS 允许域名列表（供中间件直接使用）
    @property
    def cors_origin_list(self) -> list[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]

    # 确保运行时数据目录存在（启动时创建必要目录）
    def ensure_dirs(self) -> None:
        for path in (
            self.data_dir,
            self.upload_dir,
            os.path.dirname(self.sqlite_path),
        ):
            if path:
                os.makedirs(path, exist_ok=True)


# 全局配置实例
settings = Settings()
