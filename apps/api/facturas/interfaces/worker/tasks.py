import logging
from typing import List, Optional

from celery.exceptions import SoftTimeLimitExceeded

from facturas.application.batch_service import BatchFile
from facturas.application.services import get_batch_service
from facturas.infrastructure.db import connection as db
from facturas.infrastructure.messaging.celery_app import celery_app

logger = logging.getLogger(__name__)


def _ensure_db() -> None:
    try:
        db.get_pool()
    except RuntimeError:
        db.init_pool()


@celery_app.task(name="facturas.worker.dispatch_chunk")
def dispatch_chunk(job_id: str, file_paths: List[str]) -> str:
    """
    Send one chunk of staged PDFs to the extraction service.
    """
    logger.info("Dispatching batch %s (%s files)", job_id, len(file_paths))
    _ensure_db()
    service = get_batch_service()
    try:
        files = [BatchFile.from_path(path) for path in file_paths]
        job = service.dispatch(job_id, files)
        return job.status.value
    except SoftTimeLimitExceeded:
        service.fail(job_id, "Tiempo limite excedido al enviar el lote.")
        logger.exception("Dispatch of batch %s timed out", job_id)
        raise
    except Exception as exc:
        service.fail(job_id, f"No se pudo preparar el lote: {exc}")
        logger.exception("Dispatch of batch %s failed", job_id)
        raise


@celery_app.task(name="facturas.worker.poll_batch")
def poll_batch(job_id: str) -> Optional[str]:
    _ensure_db()
    try:
        job = get_batch_service().poll(job_id)
    except Exception:
        logger.exception("Poll of batch %s failed", job_id)
        raise
    return job.status.value if job else None


@celery_app.task(name="facturas.worker.poll_batches")
def poll_batches() -> int:
    """Periodic sweep over active batches; scheduled by celery beat."""
    _ensure_db()
    try:
        jobs = get_batch_service().poll_active()
    except Exception:
        logger.exception("Batch polling sweep failed")
        raise
    active = sum(1 for job in jobs if job.is_active)
    if active:
        logger.info("Polled batches: %s still active", active)
    return active
