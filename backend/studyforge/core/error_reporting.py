from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("studyforge.errors")


# 错误上报出口：fire-and-forget，handler 自身异常由 logging 内部处理
def report_exception(exc: BaseException, **context: Any) -> None:
    details = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
    logger.error(
        "%s: %s %s",
        type(exc).__name__,
        exc,
        details,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
