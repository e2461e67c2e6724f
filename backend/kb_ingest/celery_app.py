"""
Celery application setup for KB Ingest.

Configures Celery using environment-driven settings so workers and the API
share the same broker/result backend. Tasks live in kb_ingest.core.tasks.

Queue Architecture:
- ingestion: Single-document ingestion requested with ?async=true
- crawl: Website scan runs (long-running: polling plus per-page indexing)
"""
import logging
import os

from celery import Celery
from celery.signals import worker_process_init, worker_ready
from kombu import Queue


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

app = Celery(
    "kb_ingest",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["kb_ingest.core.tasks.ingestion", "kb_ingest.core.tasks.scrape"],
)

app.conf.task_queues = (
    Queue("ingestion", routing_key="ingestion"),
    Queue("crawl", routing_key="crawl"),
)

# Core settings with sensible defaults, overridable via env
app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "600")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "900")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),  # 1 day
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "ingestion"),
    task_always_eager=_bool(os.getenv("CELERY_TASK_ALWAYS_EAGER"), False),
    task_routes={
        "kb_ingest.tasks.ingest_document_task": {"queue": "ingestion"},
        "kb_ingest.tasks.process_scan_run_task": {"queue": "crawl"},
    },
)

app.conf.timezone = "UTC"


_startup_logger = logging.getLogger("kb_ingest.celery.startup")


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    """Log the queues this worker consumes once it is ready."""
    queues = [queue.name for queue in app.conf.task_queues]
    _startup_logger.info(f"KB ingest worker ready (queues: {', '.join(queues)})")


@worker_process_init.connect
def on_worker_process_init(**kwargs):
    """Mark the process as a worker before any database engine is created."""
    os.environ["CELERY_WORKER"] = "1"
