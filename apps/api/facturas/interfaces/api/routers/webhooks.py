import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from facturas.application.batch_service import BatchService
from facturas.application.services import get_batch_service
from facturas.core import config
from facturas.infrastructure.llm.openai_batch import verify_webhook_signature
from facturas.interfaces.api.schemas import WebhookAck
from facturas.interfaces.worker.tasks import poll_batch

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/openai-batch", response_model=WebhookAck)
async def openai_batch_webhook(
    request: Request, service: BatchService = Depends(get_batch_service)
) -> WebhookAck:
    """
    Push hint from the extraction service. It only schedules a poll; batch
    state is still advanced by polling.
    """
    body = await request.body()
    if config.OPENAI_WEBHOOK_SECRET and not verify_webhook_signature(
        config.OPENAI_WEBHOOK_SECRET,
        request.headers.get("webhook-timestamp"),
        body,
        request.headers.get("webhook-signature"),
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Firma del webhook inválida.",
        )

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cuerpo del webhook inválido.",
        ) from exc

    external_ref = ((event or {}).get("data") or {}).get("id") if isinstance(event, dict) else None
    if not external_ref:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="El webhook no indica el lote.",
        )

    job = service.find_by_external_ref(external_ref)
    if job is None:
        logger.info("Webhook %s for unknown batch %s", event.get("type"), external_ref)
        return WebhookAck(received=True)

    poll_batch.delay(job.id)
    logger.info("Webhook %s: poll scheduled for batch %s", event.get("type"), job.id)
    return WebhookAck(received=True, batch_id=job.id)
