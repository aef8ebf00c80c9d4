from __future__ import annotations

import os

from studyforge.core.config import settings
from studyforge.core.errors import FileRetrievalError


# 解析上传文件路径；只允许落在上传目录内
def resolve_upload_path(file_path: str, upload_dir: str | None = None) -> str:
    root = os.path.realpath(upload_dir or settings.upload_dir)
    candidate = os.path.realpath(os.path.join(root, file_path.lstrip("/\\")))
    if os.path.commonpath([root, candidate]) != root:
        raise FileRetrievalError(f"Failed to access uploaded file: {file_path} is outside the upload directory")
    return candidate


# 读取上传文件的原始字节
def read_upload(file_path: str, upload_dir: str | None = None) -> bytes:
    path = resolve_upload_path(file_path, upload_dir)
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise FileRetrievalError(f"Failed to access uploaded file: {exc.strerror or exc}") from exc
