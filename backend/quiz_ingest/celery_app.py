"""Celery application: RabbitMQ broker, Redis result backend."""
from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
from kombu import Exchange, Queue

from quiz_ingest.config import settings
from quiz_ingest.logging_config import setup_logging

celery = Celery(
    "quiz_ingest",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=[
        "quiz_ingest.workers.index",
        "quiz_ingest.workers.detail",
        "quiz_ingest.workers.duplicates",
    ],
)

# ── Serialisation ──
celery.conf.accept_content = ["json"]
celery.conf.task_serializer = "json"
celery.conf.result_serializer = "json"
celery.conf.timezone = "UTC"
celery.conf.enable_utc = True

# ── Reliability ──
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.task_reject_on_worker_lost = True
celery.conf.task_queue_max_priority = 10
celery.conf.task_default_priority = settings.JOB_PRIORITY

# ── Exchanges & Queues ──
default_exchange = Exchange("quiz_ingest", type="direct")

celery.conf.task_queues = (
    Queue("ingest_index", default_exchange, routing_key="ingest_index", queue_arguments={"x-max-priority": 10}),
    Queue("ingest_detail", default_exchange, routing_key="ingest_detail", queue_arguments={"x-max-priority": 10}),
    Queue("maintenance", default_exchange, routing_key="maintenance"),
)

celery.conf.task_default_queue = "ingest_index"
celery.conf.task_default_exchange = "quiz_ingest"
celery.conf.task_default_routing_key = "ingest_index"

# ── Task routes ──
celery.conf.task_routes = {
    "quiz_ingest.workers.index.run_index": {"queue": "ingest_index"},
    "quiz_ingest.workers.index.run_all_sources": {"queue": "ingest_index"},
    "quiz_ingest.workers.detail.run_detail": {"queue": "ingest_detail"},
    "quiz_ingest.workers.duplicates.run_duplicate_scan": {"queue": "maintenance"},
}

# ── Beat Schedule ──
celery.conf.beat_schedule = {
    "index-all-sources-daily": {
        "task": "quiz_ingest.workers.index.run_all_sources",
        "schedule": crontab(minute=0, hour=3),
    },
    "duplicate-scan-weekly": {
        "task": "quiz_ingest.workers.duplicates.run_duplicate_scan",
        "schedule": crontab(minute=30, hour=4, day_of_week="sunday"),
    },
}


@worker_process_init.connect
def _init_worker_logging(**_kwargs) -> None:
    setup_logging("worker")
