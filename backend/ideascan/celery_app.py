"""
Celery application setup for ideascan.

Configures Celery using environment-driven settings so workers and the
service layer share the same broker/result backend. Tasks live in
ideascan.core.tasks.

Queue Architecture:
- fetch: scan start, item pages, reply chunks, fetch completion checks
- classify / extract: stage entry jobs and stage finalizers
- classify_chunk / extract_chunk: per-chunk LLM work

Chunk queues are separate so a large batch of LLM calls cannot delay the
cheap coordination jobs of other scans.
"""
import os

from celery import Celery
from kombu import Queue


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

app = Celery(
    "ideascan",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["ideascan.core.tasks.scans"],
)

app.conf.task_queues = (
    Queue("fetch", routing_key="fetch"),
    Queue("classify", routing_key="classify"),
    Queue("classify_chunk", routing_key="classify_chunk"),
    Queue("extract", routing_key="extract"),
    Queue("extract_chunk", routing_key="extract_chunk"),
)

# Core settings with sensible defaults, overridable via env
app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    task_reject_on_worker_lost=_bool(os.getenv("CELERY_REJECT_ON_WORKER_LOST", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "1800")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "2100")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),  # 1 day
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "fetch"),
    task_routes={
        "ideascan.tasks.begin_scan": {"queue": "fetch"},
        "ideascan.tasks.fetch_items": {"queue": "fetch"},
        "ideascan.tasks.fetch_replies": {"queue": "fetch"},
        "ideascan.tasks.check_fetch_complete": {"queue": "fetch"},
        "ideascan.tasks.start_classification": {"queue": "classify"},
        "ideascan.tasks.finalize_classification": {"queue": "classify"},
        "ideascan.tasks.classify_chunk": {"queue": "classify_chunk"},
        "ideascan.tasks.start_extraction": {"queue": "extract"},
        "ideascan.tasks.finalize_extraction": {"queue": "extract"},
        "ideascan.tasks.extract_chunk": {"queue": "extract_chunk"},
    },
)

app.conf.timezone = "UTC"
