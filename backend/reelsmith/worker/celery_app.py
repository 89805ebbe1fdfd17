"""
Celery application for video generation.

Broker/backend: Redis (REDIS_URL env). Queue: generation.
Run with: celery -A reelsmith.worker.celery_app worker -Q generation
"""
from celery import Celery

from reelsmith.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "reelsmith",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    task_time_limit=6 * 3600,
    task_soft_time_limit=5 * 3600,
    task_default_queue="generation",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=settings.job_terminal_ttl_sec,
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout must exceed task_time_limit or long renders get redelivered
    broker_transport_options={"visibility_timeout": 7 * 3600},
)

celery_app.autodiscover_tasks(["reelsmith.worker"])
