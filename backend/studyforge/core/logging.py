from __future__ import annotations

import logging
import sys

from studyforge.core.config import settings


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# 初始化进程级日志（API 启动与 Celery worker 启动时调用）
def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    # httpx 每次请求都会打 INFO，降噪
    logging.getLogger("httpx").setLevel(logging.WARNING)
