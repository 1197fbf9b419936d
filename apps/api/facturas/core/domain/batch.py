from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({BatchStatus.PENDING, BatchStatus.PROCESSING})
TERMINAL_STATUSES = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED}
)


class ErrorKind(str, Enum):
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    PARSING_ERROR = "PARSING_ERROR"
    EXTRACTION_ERROR = "EXTRACTION_ERROR"
    BLOCKED_PROVIDER = "BLOCKED_PROVIDER"
    OTHER = "OTHER"


@dataclass(frozen=True)
class ErrorDetail:
    kind: ErrorKind
    message: str
    file_name: Optional[str] = None
    invoice_code: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorDetail":
        try:
            kind = ErrorKind(data.get("kind"))
        except ValueError:
            kind = ErrorKind.OTHER
        raw_ts = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if isinstance(raw_ts, str) else utcnow()
        return cls(
            kind=kind,
            message=str(data.get("message") or ""),
            file_name=data.get("file_name"),
            invoice_code=data.get("invoice_code"),
            timestamp=timestamp,
        )


@dataclass
class BatchJob:
    """One physical chunk of a user submission, tracked through the external job."""

    id: str
    submission_id: str
    status: BatchStatus
    total_files: int
    file_names: List[str] = field(default_factory=list)
    processed_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    blocked_files: int = 0
    current_file: Optional[str] = None
    errors: List[ErrorDetail] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    retry_attempts: int = 0
    retried_files: int = 0
    external_ref: Optional[str] = None
    ingestion_started_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class SubmissionSummary:
    """One logical submission as the user sees it, aggregated over its chunks."""

    submission_id: str
    status: BatchStatus
    batch_ids: List[str]
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    blocked_files: int
    errors: List[ErrorDetail]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]


def summarize_submission(submission_id: str, batches: List[BatchJob]) -> SubmissionSummary:
    statuses = [batch.status for batch in batches]
    if not batches or any(s.is_active for s in statuses):
        status = BatchStatus.PROCESSING
    elif all(s is BatchStatus.CANCELLED for s in statuses):
        status = BatchStatus.CANCELLED
    elif all(s in (BatchStatus.FAILED, BatchStatus.CANCELLED) for s in statuses):
        status = BatchStatus.FAILED
    else:
        status = BatchStatus.COMPLETED

    ordered = sorted(batches, key=lambda batch: batch.created_at)
    completed = [batch.completed_at for batch in ordered if batch.completed_at]
    return SubmissionSummary(
        submission_id=submission_id,
        status=status,
        batch_ids=[batch.id for batch in ordered],
        total_files=sum(batch.total_files for batch in ordered),
        processed_files=sum(batch.processed_files for batch in ordered),
        successful_files=sum(batch.successful_files for batch in ordered),
        failed_files=sum(batch.failed_files for batch in ordered),
        blocked_files=sum(batch.blocked_files for batch in ordered),
        errors=[error for batch in ordered for error in batch.errors],
        created_at=ordered[0].created_at if ordered else None,
        completed_at=max(completed) if status.is_terminal and completed else None,
    )
