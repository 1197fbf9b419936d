from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from facturas.core.domain.batch import BatchJob, BatchStatus, ErrorDetail, ErrorKind, SubmissionSummary


class ErrorDetailOut(BaseModel):
    kind: ErrorKind
    message: str
    file_name: Optional[str] = None
    invoice_code: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_domain(cls, error: ErrorDetail) -> "ErrorDetailOut":
        return cls(
            kind=error.kind,
            message=error.message,
            file_name=error.file_name,
            invoice_code=error.invoice_code,
            timestamp=error.timestamp,
        )


class BatchJobOut(BaseModel):
    id: str
    submission_id: str
    status: BatchStatus
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    blocked_files: int
    current_file: Optional[str] = None
    file_names: List[str] = Field(default_factory=list)
    errors: List[ErrorDetailOut] = Field(default_factory=list)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    retry_attempts: int = 0
    retried_files: int = 0

    @classmethod
    def from_domain(cls, job: BatchJob) -> "BatchJobOut":
        return cls(
            id=job.id,
            submission_id=job.submission_id,
            status=job.status,
            total_files=job.total_files,
            processed_files=job.processed_files,
            successful_files=job.successful_files,
            failed_files=job.failed_files,
            blocked_files=job.blocked_files,
            current_file=job.current_file,
            file_names=job.file_names,
            errors=[ErrorDetailOut.from_domain(e) for e in job.errors],
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            estimated_completion=job.estimated_completion,
            retry_attempts=job.retry_attempts,
            retried_files=job.retried_files,
        )


class BatchListResponse(BaseModel):
    batches: List[BatchJobOut]
    # submission_id -> files the optimistic indicator still shows
    pending: Dict[str, int] = Field(default_factory=dict)


class SubmitResponse(BaseModel):
    submission_id: str
    batch_ids: List[str]
    expected_files: int
    message: str


class SubmissionResponse(BaseModel):
    submission_id: str
    status: BatchStatus
    batch_ids: List[str]
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    blocked_files: int
    errors: List[ErrorDetailOut] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, summary: SubmissionSummary) -> "SubmissionResponse":
        return cls(
            submission_id=summary.submission_id,
            status=summary.status,
            batch_ids=summary.batch_ids,
            total_files=summary.total_files,
            processed_files=summary.processed_files,
            successful_files=summary.successful_files,
            failed_files=summary.failed_files,
            blocked_files=summary.blocked_files,
            errors=[ErrorDetailOut.from_domain(e) for e in summary.errors],
            created_at=summary.created_at,
            completed_at=summary.completed_at,
        )


class WebhookAck(BaseModel):
    received: bool = True
    batch_id: Optional[str] = None
