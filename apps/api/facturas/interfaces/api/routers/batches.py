import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from facturas.application import upload_service
from facturas.application.batch_service import BatchNotFoundError, BatchService, BatchStateError
from facturas.application.progress import PendingIndicator
from facturas.application.services import get_batch_service, get_pending_indicator
from facturas.interfaces.api.schemas import (
    BatchJobOut,
    BatchListResponse,
    SubmissionResponse,
    SubmitResponse,
)
from facturas.interfaces.worker.tasks import dispatch_chunk

logger = logging.getLogger(__name__)

router = APIRouter(tags=["batches"])

ALLOWED_CONTENT_TYPES = {"application/pdf", "application/octet-stream"}


@router.post("/batches", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_batches(
    files: List[UploadFile] = File(...),
    service: BatchService = Depends(get_batch_service),
) -> SubmitResponse:
    if not files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No se recibieron archivos.",
        )
    for upload in files:
        if upload.content_type not in ALLOWED_CONTENT_TYPES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Solo se permiten archivos PDF: {upload.filename}",
            )

    try:
        staged = upload_service.stage_files(str(uuid.uuid4()), files)
        submission_id, planned = service.create_batches(staged)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    for job, chunk in planned:
        try:
            dispatch_chunk.delay(job.id, [f.path for f in chunk])
        except Exception:  # pragma: no cover - runtime protection
            logger.exception("Could not enqueue batch %s", job.id)
            service.fail(job.id, "No se pudo encolar el lote.")

    return SubmitResponse(
        submission_id=submission_id,
        batch_ids=[job.id for job, _ in planned],
        expected_files=len(staged),
        message=f"{len(staged)} facturas en cola en {len(planned)} lotes.",
    )


@router.get("/batches", response_model=BatchListResponse)
def list_batches(
    service: BatchService = Depends(get_batch_service),
    indicator: PendingIndicator = Depends(get_pending_indicator),
) -> BatchListResponse:
    jobs = service.list_batches()
    return BatchListResponse(
        batches=[BatchJobOut.from_domain(job) for job in jobs],
        pending=indicator.snapshot(),
    )


@router.get("/batches/{batch_id}", response_model=BatchJobOut)
def batch_status(batch_id: str, service: BatchService = Depends(get_batch_service)) -> BatchJobOut:
    job = service.get_status(batch_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Lote no encontrado.",
        )
    return BatchJobOut.from_domain(job)


@router.post("/batches/{batch_id}/cancel", response_model=BatchJobOut)
def cancel_batch(batch_id: str, service: BatchService = Depends(get_batch_service)) -> BatchJobOut:
    try:
        job = service.cancel(batch_id)
    except BatchNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Lote no encontrado.",
        ) from exc
    except BatchStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.exception("Cancel of batch %s failed", batch_id)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="No se pudo cancelar el lote en el servicio de extracción.",
        ) from exc
    return BatchJobOut.from_domain(job)


@router.get("/submissions/{submission_id}", response_model=SubmissionResponse)
def submission_status(
    submission_id: str, service: BatchService = Depends(get_batch_service)
) -> SubmissionResponse:
    summary = service.get_submission(submission_id)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Envío no encontrado.",
        )
    return SubmissionResponse.from_domain(summary)
