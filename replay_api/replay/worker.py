"""Celery worker for background transcription jobs."""
from celery import Celery

from .config import settings

celery_app = Celery(
    "replay",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["replay.tasks.transcribe"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=60 * 60,  # a paced batch can be long
    task_soft_time_limit=55 * 60,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
