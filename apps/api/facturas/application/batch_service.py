"""
Batch lifecycle: chunking, dispatch to the extraction service, status polling
and one-shot ingestion of the results.

States move PENDING -> PROCESSING -> COMPLETED | FAILED | CANCELLED. The
batch row is the only shared mutable state; the repository's
``claim_ingestion`` and ``finish_job`` are the check-then-act guards that keep
concurrent pollers from ingesting or finishing a batch twice.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from facturas.application import reconciliation
from facturas.application.invoice_mapper import InvoiceMapper, MappingError
from facturas.application.progress import ProgressMonitor
from facturas.application.retry import RetryPolicy
from facturas.core import config
from facturas.core.domain.batch import (
    BatchJob,
    BatchStatus,
    ErrorDetail,
    ErrorKind,
    SubmissionSummary,
    summarize_submission,
    utcnow,
)
from facturas.core.domain.invoice import (
    DuplicateInvoiceError,
    ExtractedInvoice,
    MappedInvoice,
    PersistedInvoice,
    Provider,
)
from facturas.infrastructure.extraction.json_recovery import parse_invoice_json
from facturas.infrastructure.extraction.jsonl_reader import RawRecord, read_records

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^file-(\d+)$")

EXTERNAL_STATES: Dict[str, BatchStatus] = {
    # OpenAI Batch API
    "validating": BatchStatus.PENDING,
    "in_progress": BatchStatus.PROCESSING,
    "finalizing": BatchStatus.PROCESSING,
    "cancelling": BatchStatus.PROCESSING,
    "completed": BatchStatus.COMPLETED,
    "failed": BatchStatus.FAILED,
    "expired": BatchStatus.CANCELLED,
    "cancelled": BatchStatus.CANCELLED,
    # Gemini batch jobs
    "JOB_STATE_PENDING": BatchStatus.PENDING,
    "JOB_STATE_QUEUED": BatchStatus.PENDING,
    "JOB_STATE_RUNNING": BatchStatus.PROCESSING,
    "JOB_STATE_SUCCEEDED": BatchStatus.COMPLETED,
    "JOB_STATE_FAILED": BatchStatus.FAILED,
    "JOB_STATE_CANCELLED": BatchStatus.CANCELLED,
    "JOB_STATE_EXPIRED": BatchStatus.CANCELLED,
}


def map_external_state(state: Optional[str]) -> Optional[BatchStatus]:
    """Translate the extraction service's vocabulary; None for unknown states."""
    if not state:
        return None
    return EXTERNAL_STATES.get(state) or EXTERNAL_STATES.get(state.lower())


def result_key(index: int) -> str:
    return f"file-{index}"


@dataclass(frozen=True)
class BatchFile:
    name: str
    path: str
    size: int

    @classmethod
    def from_path(cls, path: str) -> "BatchFile":
        p = Path(path)
        return cls(name=p.name, path=str(p), size=p.stat().st_size)


@dataclass(frozen=True)
class ExternalJobStatus:
    state: str
    total: Optional[int] = None
    completed: Optional[int] = None
    failed: Optional[int] = None
    output_refs: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ExtractionService(Protocol):
    def submit(self, files: Sequence[BatchFile]) -> str: ...

    def get_status(self, external_ref: str) -> ExternalJobStatus: ...

    def read_output(self, output_ref: str) -> Iterable[bytes]: ...

    def cancel(self, external_ref: str) -> None: ...


class BatchRepository(Protocol):
    def create_job(self, submission_id: str, file_names: List[str]) -> BatchJob: ...

    def update_job(self, job_id: str, **fields: Any) -> Optional[BatchJob]: ...

    def get_job(self, job_id: str) -> Optional[BatchJob]: ...

    def list_jobs(
        self,
        submission_id: Optional[str] = None,
        active_or_recent_seconds: Optional[int] = None,
    ) -> List[BatchJob]: ...

    def find_by_external_ref(self, external_ref: str) -> Optional[BatchJob]: ...

    def claim_ingestion(
        self, job_id: str, stale_after_seconds: Optional[int] = None
    ) -> Optional[BatchJob]: ...

    def finish_job(
        self, job_id: str, *, unclaimed_only: bool = False, **fields: Any
    ) -> Optional[BatchJob]: ...


class InvoiceStore(Protocol):
    def find_invoice(self, invoice_code: str, provider_id: str) -> Optional[Any]: ...

    def find_or_create_provider(self, cif: str, attrs: Dict[str, Any]) -> Provider: ...

    def blocked_provider_ids(self) -> Set[str]: ...

    def create_invoice_with_items(self, invoice: MappedInvoice) -> PersistedInvoice: ...


class BatchNotFoundError(Exception):
    pass


class BatchStateError(Exception):
    pass


def chunk_files(
    files: Sequence[BatchFile],
    max_files: int = config.BATCH_CHUNK_SIZE,
    max_bytes: int = config.BATCH_CHUNK_MAX_BYTES,
) -> List[List[BatchFile]]:
    """Split files into request-sized chunks. A file over ``max_bytes`` travels alone."""
    chunks: List[List[BatchFile]] = []
    current: List[BatchFile] = []
    current_bytes = 0
    for batch_file in files:
        if current and (len(current) >= max_files or current_bytes + batch_file.size > max_bytes):
            chunks.append(current)
            current, current_bytes = [], 0
        current.append(batch_file)
        current_bytes += batch_file.size
    if current:
        chunks.append(current)
    return chunks


def estimate_completion(
    started_at: Optional[datetime], processed: int, total: int, now: datetime
) -> Optional[datetime]:
    if started_at is None or processed <= 0 or processed >= total:
        return None
    per_file = (now - started_at) / processed
    return now + per_file * (total - processed)


class _Tally:
    """Running counters and error log for one ingestion pass."""

    def __init__(self, job: BatchJob) -> None:
        self.total = job.total_files
        # Only ingestion writes errors, so a re-taken claim starts from a clean log.
        self.errors: List[ErrorDetail] = []
        self.successful = 0
        self.failed = 0
        self.blocked = 0
        self.handled = 0
        self.records_read = 0
        self.seen: Set[int] = set()

    @property
    def processed(self) -> int:
        return self.successful + self.failed + self.blocked

    def succeed(self) -> None:
        self.successful += 1

    def fail(self, kind: ErrorKind, message: str, file_name=None, invoice_code=None) -> None:
        self.failed += 1
        self.note(kind, message, file_name, invoice_code)

    def block(self, message: str, file_name=None, invoice_code=None) -> None:
        self.blocked += 1
        self.note(ErrorKind.BLOCKED_PROVIDER, message, file_name, invoice_code)

    def note(self, kind: ErrorKind, message: str, file_name=None, invoice_code=None) -> None:
        self.errors.append(
            ErrorDetail(kind=kind, message=message, file_name=file_name, invoice_code=invoice_code)
        )

    def counters(self) -> Dict[str, Any]:
        return {
            "processed_files": self.processed,
            "successful_files": self.successful,
            "failed_files": self.failed,
            "blocked_files": self.blocked,
            "errors": list(self.errors),
        }


class BatchService:
    def __init__(
        self,
        batches: BatchRepository,
        store: InvoiceStore,
        extraction: ExtractionService,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        monitor: Optional[ProgressMonitor] = None,
        mapper: Optional[InvoiceMapper] = None,
        chunk_size: int = config.BATCH_CHUNK_SIZE,
        chunk_max_bytes: int = config.BATCH_CHUNK_MAX_BYTES,
        claim_timeout: int = config.INGESTION_CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self.batches = batches
        self.store = store
        self.extraction = extraction
        self.retry = retry_policy or RetryPolicy()
        self.monitor = monitor
        self.mapper = mapper or InvoiceMapper(store)
        self.chunk_size = chunk_size
        self.chunk_max_bytes = chunk_max_bytes
        self.claim_timeout = claim_timeout

    # Submission

    def create_batches(
        self, files: Sequence[BatchFile]
    ) -> Tuple[str, List[Tuple[BatchJob, List[BatchFile]]]]:
        """Create one PENDING job per chunk under a fresh submission id."""
        if not files:
            raise ValueError("No se recibieron archivos para procesar.")
        submission_id = str(uuid.uuid4())
        if self.monitor is not None:
            self.monitor.batch_created(submission_id, len(files))

        planned = []
        for chunk in chunk_files(files, self.chunk_size, self.chunk_max_bytes):
            job = self.batches.create_job(submission_id, [f.name for f in chunk])
            planned.append((job, chunk))
        logger.info(
            "Submission %s: %s files in %s batches", submission_id, len(files), len(planned)
        )
        return submission_id, planned

    def submit(self, files: Sequence[BatchFile]) -> List[BatchJob]:
        _, planned = self.create_batches(files)
        return [self.dispatch(job.id, chunk) for job, chunk in planned]

    def dispatch(self, job_id: str, files: Sequence[BatchFile]) -> BatchJob:
        job = self._require(job_id)
        if job.status is not BatchStatus.PENDING or job.external_ref:
            logger.info("Batch %s: already dispatched (%s)", job_id, job.status.value)
            return job

        retry_state = {"attempts": job.retry_attempts, "files": job.retried_files}

        def on_retry(attempt: int, exc: BaseException) -> None:
            retry_state["attempts"] += 1
            retry_state["files"] += len(files)
            self.batches.update_job(
                job_id,
                retry_attempts=retry_state["attempts"],
                retried_files=retry_state["files"],
            )

        try:
            external_ref = self.retry.call(self.extraction.submit, files, on_retry=on_retry)
        except Exception as exc:
            logger.exception("Batch %s: could not dispatch to the extraction service", job_id)
            error = ErrorDetail(
                kind=ErrorKind.OTHER,
                message=f"No se pudo enviar el lote al servicio de extracción: {exc}",
            )
            return self._finish(
                job,
                status=BatchStatus.FAILED,
                processed_files=job.total_files,
                successful_files=0,
                failed_files=job.total_files,
                blocked_files=0,
                errors=job.errors + [error],
            )

        logger.info("Batch %s: dispatched as %s", job_id, external_ref)
        updated = self.batches.update_job(
            job_id,
            external_ref=external_ref,
            status=BatchStatus.PROCESSING,
            started_at=job.started_at or utcnow(),
        )
        return updated or self._require(job_id)

    # Polling

    def poll(self, job_id: str) -> Optional[BatchJob]:
        job = self.batches.get_job(job_id)
        if job is None or job.is_terminal or not job.external_ref:
            return job

        try:
            external = self.retry.call(self.extraction.get_status, job.external_ref)
        except Exception:
            logger.exception("Batch %s: status query failed; will retry on next poll", job_id)
            return job

        status = map_external_state(external.state)
        if status is None:
            logger.warning("Batch %s: unknown external state %r", job_id, external.state)
            status = job.status
        elif status is BatchStatus.PENDING:
            # A dispatched batch stays PROCESSING while the service validates it.
            status = job.status

        if status is BatchStatus.COMPLETED:
            if job.completed_at is not None:
                return job
            return self.ingest(job_id, external.output_refs)
        if status in (BatchStatus.FAILED, BatchStatus.CANCELLED):
            message = external.error or (
                "El servicio de extracción no pudo procesar el lote."
                if status is BatchStatus.FAILED
                else "El trabajo de extracción fue cancelado o expiró."
            )
            return self._finish_without_output(job, status, message)

        now = utcnow()
        fields: Dict[str, Any] = {"status": status}
        started_at = job.started_at
        if status is BatchStatus.PROCESSING and started_at is None:
            started_at = now
            fields["started_at"] = now
        if external.completed is not None or external.failed is not None:
            successful = min(external.completed or 0, job.total_files)
            failed = min(external.failed or 0, job.total_files - successful)
            fields.update(
                processed_files=successful + failed,
                successful_files=successful,
                failed_files=failed,
            )
            fields["estimated_completion"] = estimate_completion(
                started_at, successful + failed, job.total_files, now
            )
        return self.batches.update_job(job_id, **fields) or job

    def poll_active(self) -> List[BatchJob]:
        jobs = self.batches.list_jobs(active_or_recent_seconds=config.RECENT_BATCH_WINDOW_SECONDS)
        results = []
        for job in jobs:
            if not job.is_active:
                results.append(job)
                continue
            try:
                polled = self.poll(job.id)
            except Exception:
                logger.exception("Batch %s: poll failed", job.id)
                polled = job
            results.append(polled or job)
        if self.monitor is not None:
            self.monitor.observe(results)
        return results

    # Ingestion

    def ingest(self, job_id: str, output_refs: Sequence[str]) -> Optional[BatchJob]:
        """
        Read the extraction results of a finished batch and persist them.

        Runs at most once per batch: the claim on the row fails for a batch
        that is already terminal or whose ingestion started elsewhere less than
        ``claim_timeout`` seconds ago. An older claim belongs to a worker that
        died mid-run and is taken over.
        Per-record problems become ErrorDetail entries; they never stop the loop.
        """
        job = self.batches.claim_ingestion(job_id, self.claim_timeout)
        if job is None:
            logger.info("Batch %s: ingestion already done or in progress", job_id)
            return self.batches.get_job(job_id)

        if not output_refs:
            return self._finish_without_output(
                job, BatchStatus.FAILED, "El servicio no devolvió resultados."
            )

        tally = _Tally(job)
        try:
            self._ingest_records(job, output_refs, tally)
        except Exception as exc:
            logger.exception("Batch %s: ingestion stopped", job_id)
            tally.note(ErrorKind.OTHER, f"Error al procesar los resultados: {exc}")
            self._fail_missing(job, tally, "Sin procesar por un error interno.")
            return self._finish(
                job,
                status=BatchStatus.COMPLETED if tally.successful else BatchStatus.FAILED,
                **tally.counters(),
            )

        if tally.records_read == 0:
            return self._finish_without_output(
                job, BatchStatus.FAILED, "El servicio no devolvió resultados."
            )
        logger.info(
            "Batch %s: ingested %s ok, %s failed, %s blocked of %s",
            job_id,
            tally.successful,
            tally.failed,
            tally.blocked,
            job.total_files,
        )
        return self._finish(job, status=BatchStatus.COMPLETED, **tally.counters())

    def _ingest_records(self, job: BatchJob, output_refs: Sequence[str], tally: _Tally) -> None:
        blocked = set(self.store.blocked_provider_ids())
        for output_ref in output_refs:
            for record in read_records(self.extraction.read_output(output_ref)):
                tally.records_read += 1
                index = self._file_index(job, record.key)
                if index is not None and index in tally.seen:
                    logger.warning("Batch %s: duplicate result for %s ignored", job.id, record.key)
                    continue
                if tally.handled >= job.total_files:
                    logger.warning(
                        "Batch %s: more results than files; ignoring line %s",
                        job.id,
                        record.line_number,
                    )
                    continue
                if index is not None:
                    tally.seen.add(index)
                file_name = job.file_names[index] if index is not None else record.key
                self._ingest_record(job, record, file_name, tally, blocked)
                tally.handled += 1
                self.batches.update_job(job.id, current_file=file_name, **tally.counters())
        self._fail_missing(job, tally, "Sin resultado en la respuesta del servicio.")

    def _ingest_record(
        self,
        job: BatchJob,
        record: RawRecord,
        file_name: Optional[str],
        tally: _Tally,
        blocked: Set[str],
    ) -> None:
        if record.error is not None:
            tally.fail(ErrorKind.EXTRACTION_ERROR, record.error, file_name)
            return
        invoice_code = None
        try:
            payload = parse_invoice_json(record.text)
            if payload is None:
                tally.fail(
                    ErrorKind.PARSING_ERROR,
                    "La respuesta del servicio no contiene una factura legible.",
                    file_name,
                )
                return
            extracted = ExtractedInvoice.from_payload(payload)
            invoice_code = extracted.invoice_code
            mapped = self.mapper.map(extracted)
            outcome = reconciliation.check(mapped, self.store, blocked)
            if outcome.decision is reconciliation.Decision.REJECT:
                tally.block(outcome.message, file_name, invoice_code)
            elif outcome.decision is reconciliation.Decision.SKIP:
                tally.note(outcome.kind, outcome.message, file_name, invoice_code)
            else:
                persisted = self.store.create_invoice_with_items(mapped)
                tally.succeed()
                logger.info(
                    "Batch %s: invoice %s saved (%s price alerts)",
                    job.id,
                    persisted.invoice_code,
                    persisted.alerts_created,
                )
        except MappingError as exc:
            tally.fail(exc.kind, exc.message, file_name, invoice_code)
        except DuplicateInvoiceError as exc:
            tally.note(ErrorKind.DUPLICATE_INVOICE, str(exc), file_name, invoice_code)
        except Exception as exc:
            logger.exception("Batch %s: could not save %s", job.id, file_name)
            tally.fail(ErrorKind.OTHER, f"Error al guardar la factura: {exc}", file_name, invoice_code)

    def _fail_missing(self, job: BatchJob, tally: _Tally, message: str) -> None:
        for index, name in enumerate(job.file_names):
            if tally.handled >= job.total_files:
                break
            if index in tally.seen:
                continue
            tally.seen.add(index)
            tally.fail(ErrorKind.EXTRACTION_ERROR, message, name)
            tally.handled += 1

    @staticmethod
    def _file_index(job: BatchJob, key: Optional[str]) -> Optional[int]:
        match = _KEY_PATTERN.match(key or "")
        if not match:
            return None
        index = int(match.group(1))
        return index if index < len(job.file_names) else None

    # Cancellation and queries

    def cancel(self, job_id: str) -> BatchJob:
        job = self._require_unclaimed(job_id)
        if job.external_ref:
            self.retry.call(self.extraction.cancel, job.external_ref)
        cancelled = self._finish_without_output(
            job, BatchStatus.CANCELLED, "Lote cancelado por el usuario.", unclaimed_only=True
        )
        if cancelled.status is not BatchStatus.CANCELLED:
            raise BatchStateError("El lote ya se está guardando y no puede cancelarse.")
        logger.info("Batch %s: cancelled by user", job_id)
        return cancelled

    def fail(self, job_id: str, message: str) -> BatchJob:
        """Mark a batch FAILED for a problem on our side, before any result exists."""
        job = self._require(job_id)
        if job.is_terminal:
            return job
        if job.ingestion_started_at is not None:
            raise BatchStateError(f"El lote {job_id} ya se está guardando.")
        return self._finish_without_output(
            job, BatchStatus.FAILED, message, ErrorKind.OTHER, unclaimed_only=True
        )

    def get_status(self, job_id: str) -> Optional[BatchJob]:
        return self.batches.get_job(job_id)

    def list_batches(self) -> List[BatchJob]:
        jobs = self.batches.list_jobs(active_or_recent_seconds=config.RECENT_BATCH_WINDOW_SECONDS)
        if self.monitor is not None:
            self.monitor.observe(jobs)
        return jobs

    def get_submission(self, submission_id: str) -> Optional[SubmissionSummary]:
        jobs = self.batches.list_jobs(submission_id=submission_id)
        if not jobs:
            return None
        return summarize_submission(submission_id, jobs)

    def find_by_external_ref(self, external_ref: str) -> Optional[BatchJob]:
        return self.batches.find_by_external_ref(external_ref)

    # Helpers

    def _require(self, job_id: str) -> BatchJob:
        job = self.batches.get_job(job_id)
        if job is None:
            raise BatchNotFoundError(job_id)
        return job

    def _require_unclaimed(self, job_id: str) -> BatchJob:
        job = self._require(job_id)
        if job.is_terminal:
            raise BatchStateError(f"El lote ya está en estado {job.status.value}.")
        if job.ingestion_started_at is not None:
            raise BatchStateError("El lote ya se está guardando y no puede cancelarse.")
        return job

    def _finish_without_output(
        self,
        job: BatchJob,
        status: BatchStatus,
        message: str,
        kind: Optional[ErrorKind] = None,
        unclaimed_only: bool = False,
    ) -> BatchJob:
        if kind is None:
            kind = ErrorKind.EXTRACTION_ERROR if status is BatchStatus.FAILED else ErrorKind.OTHER
        return self._finish(
            job,
            unclaimed_only=unclaimed_only,
            status=status,
            processed_files=job.total_files,
            successful_files=0,
            failed_files=job.total_files,
            blocked_files=0,
            errors=job.errors + [ErrorDetail(kind=kind, message=message)],
        )

    def _finish(self, job: BatchJob, *, unclaimed_only: bool = False, **fields: Any) -> BatchJob:
        finished = self.batches.finish_job(
            job.id,
            unclaimed_only=unclaimed_only,
            current_file=None,
            estimated_completion=None,
            **fields,
        )
        if finished is None:
            logger.info("Batch %s: already finished, keeping stored result", job.id)
            return self._require(job.id)
        return finished
