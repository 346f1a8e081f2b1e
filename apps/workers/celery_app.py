from __future__ import annotations

import os
from celery import Celery

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")

celery_app = Celery(
    "moderation_workers",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["apps.workers.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # cleanup results are only read by operators; keep them short-lived
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES_S", "3600")),
    task_acks_late=True,
)
celery_app.conf.broker_connection_retry_on_startup = True
