from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging

from studyforge.core.config import settings
from studyforge.core.logging import configure_logging


# 创建 Celery 应用
celery_app = Celery(
    "studyforge",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery 序列化与时区配置
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 至少一次投递：任务执行完成后才 ack，worker 异常退出时消息重新入队
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_always_eager=settings.celery_task_always_eager,
)


# worker 使用项目统一的日志格式
@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()


# 自动发现任务模块
celery_app.autodiscover_tasks(["studyforge.tasks"])
