from typing import Optional

from facturas.application.batch_service import BatchService
from facturas.application.progress import PendingIndicator, ProgressChannel, ProgressMonitor
from facturas.infrastructure.db import batch_repository, invoice_repository
from facturas.infrastructure.llm.openai_batch import OpenAIBatchExtraction

progress_channel = ProgressChannel()
progress_monitor = ProgressMonitor(progress_channel)
pending_indicator = PendingIndicator(progress_channel)

_service: Optional[BatchService] = None


def get_batch_service() -> BatchService:
    """Process-wide service; the repositories are stateless modules over the pool."""
    global _service
    if _service is None:
        _service = BatchService(
            batch_repository,
            invoice_repository,
            OpenAIBatchExtraction(),
            monitor=progress_monitor,
        )
    return _service


def get_pending_indicator() -> PendingIndicator:
    return pending_indicator
