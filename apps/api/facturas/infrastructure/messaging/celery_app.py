import os

from celery import Celery

from facturas.core import config

BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://redis:6379/0")
RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", BROKER_URL)
WORKER_CONCURRENCY = int(os.environ.get("CELERY_CONCURRENCY", "1"))
TASK_TIME_LIMIT = int(os.environ.get("CELERY_TASK_TIME_LIMIT", "600"))
TASK_SOFT_TIME_LIMIT = int(os.environ.get("CELERY_TASK_SOFT_TIME_LIMIT", "570"))

celery_app = Celery(
    "facturas",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
)

celery_app.conf.update(
    task_routes={
        "facturas.worker.dispatch_chunk": {"queue": "ingest"},
        "facturas.worker.poll_batch": {"queue": "ingest"},
        "facturas.worker.poll_batches": {"queue": "ingest"},
    },
    # Ingestion reads whole result files; one task per worker process at a time.
    worker_concurrency=WORKER_CONCURRENCY,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    task_time_limit=TASK_TIME_LIMIT,
    task_soft_time_limit=TASK_SOFT_TIME_LIMIT,
    beat_schedule={
        "poll-active-batches": {
            "task": "facturas.worker.poll_batches",
            "schedule": float(config.BATCH_POLL_INTERVAL_SECONDS),
        },
    },
)

celery_app.autodiscover_tasks(["facturas.interfaces.worker"])
