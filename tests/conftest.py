import copy
import itertools
import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure apps/api is on path for imports inside the API package (e.g., `facturas.application.batch_service`).
ROOT = Path(__file__).resolve().parents[1]
API_PATH = ROOT / "apps" / "api"
if str(API_PATH) not in sys.path:
    sys.path.insert(0, str(API_PATH))

from facturas.application.batch_service import BatchFile, BatchService, ExternalJobStatus  # noqa: E402
from facturas.application.progress import ProgressChannel, ProgressMonitor  # noqa: E402
from facturas.application.retry import RetryPolicy  # noqa: E402
from facturas.core.domain.batch import BatchJob, BatchStatus, utcnow  # noqa: E402
from facturas.core.domain.invoice import DuplicateInvoiceError, PersistedInvoice, Provider  # noqa: E402


class FakeBatchRepository:
    """In-memory batch store with the same guards as the SQL repository."""

    ALLOWED = {
        "status",
        "processed_files",
        "successful_files",
        "failed_files",
        "blocked_files",
        "current_file",
        "errors",
        "retry_attempts",
        "retried_files",
        "external_ref",
        "started_at",
        "estimated_completion",
    }

    def __init__(self):
        self.jobs: Dict[str, BatchJob] = {}
        self._ids = itertools.count(1)

    def create_job(self, submission_id, file_names):
        job = BatchJob(
            id=f"batch-{next(self._ids)}",
            submission_id=submission_id,
            status=BatchStatus.PENDING,
            total_files=len(file_names),
            file_names=list(file_names),
        )
        self.jobs[job.id] = job
        return copy.deepcopy(job)

    def _apply(self, job, fields):
        for key, value in fields.items():
            if key in self.ALLOWED:
                setattr(job, key, list(value) if key == "errors" else value)

    def update_job(self, job_id, **fields):
        job = self.jobs.get(job_id)
        if job is None or job.completed_at is not None:
            return None
        self._apply(job, fields)
        return copy.deepcopy(job)

    def finish_job(self, job_id, *, unclaimed_only=False, **fields):
        job = self.jobs.get(job_id)
        if job is None or job.completed_at is not None:
            return None
        if unclaimed_only and job.ingestion_started_at is not None:
            return None
        self._apply(job, fields)
        job.completed_at = utcnow()
        return copy.deepcopy(job)

    def claim_ingestion(self, job_id, stale_after_seconds=None):
        job = self.jobs.get(job_id)
        if job is None or job.completed_at is not None:
            return None
        if job.ingestion_started_at is not None:
            stale = stale_after_seconds is not None and (
                utcnow() - job.ingestion_started_at > timedelta(seconds=stale_after_seconds)
            )
            if not stale:
                return None
        job.ingestion_started_at = utcnow()
        return copy.deepcopy(job)

    def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    def list_jobs(self, submission_id=None, active_or_recent_seconds=None):
        jobs = [
            job
            for job in self.jobs.values()
            if submission_id is None or job.submission_id == submission_id
        ]
        return [copy.deepcopy(job) for job in jobs]

    def find_by_external_ref(self, external_ref):
        for job in self.jobs.values():
            if job.external_ref == external_ref:
                return copy.deepcopy(job)
        return None


class FakeInvoiceStore:
    def __init__(self):
        self.providers: Dict[str, Provider] = {}
        self.invoices: Dict[tuple, dict] = {}
        self.blocked: set = set()
        self.create_calls = 0

    def find_or_create_provider(self, cif, attrs):
        if cif not in self.providers:
            self.providers[cif] = Provider(
                id=f"prov-{cif}", cif=cif, name=attrs.get("name") or cif
            )
        provider = self.providers[cif]
        return Provider(
            id=provider.id,
            cif=provider.cif,
            name=provider.name,
            is_blocked=provider.id in self.blocked,
        )

    def find_invoice(self, invoice_code, provider_id):
        return self.invoices.get((invoice_code, provider_id))

    def blocked_provider_ids(self):
        return set(self.blocked)

    def create_invoice_with_items(self, invoice):
        self.create_calls += 1
        key = (invoice.invoice_code, invoice.provider.id)
        if key in self.invoices:
            raise DuplicateInvoiceError(invoice.invoice_code, invoice.provider.id)
        self.invoices[key] = {"invoice": invoice}
        return PersistedInvoice(
            id=f"inv-{len(self.invoices)}",
            invoice_code=invoice.invoice_code,
            provider_id=invoice.provider.id,
        )

    def add_existing(self, invoice_code, cif, name="Proveedor"):
        provider = self.find_or_create_provider(cif, {"name": name})
        self.invoices[(invoice_code, provider.id)] = {"existing": True}
        return provider

    def block(self, cif, name="Proveedor"):
        provider = self.find_or_create_provider(cif, {"name": name})
        self.blocked.add(provider.id)
        return provider


class FakeExtraction:
    def __init__(self):
        self.submitted: List[List[BatchFile]] = []
        self.statuses: Dict[str, ExternalJobStatus] = {}
        self.outputs: Dict[str, bytes] = {}
        self.cancelled: List[str] = []
        self.submit_errors: List[Exception] = []
        self.status_calls = 0
        self.read_calls = 0

    def submit(self, files):
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(list(files))
        ref = f"ext-{len(self.submitted)}"
        self.statuses[ref] = ExternalJobStatus(state="validating", total=len(files))
        return ref

    def get_status(self, external_ref):
        self.status_calls += 1
        return self.statuses[external_ref]

    def read_output(self, output_ref):
        self.read_calls += 1
        data = self.outputs[output_ref]
        # Emit in small pieces to exercise line reassembly.
        return (data[i : i + 7] for i in range(0, len(data), 7))

    def cancel(self, external_ref):
        self.cancelled.append(external_ref)

    def complete(self, external_ref, lines: List[dict], output_ref: Optional[str] = None):
        output_ref = output_ref or f"{external_ref}-out"
        self.outputs[output_ref] = "\n".join(json.dumps(line) for line in lines).encode("utf-8")
        self.statuses[external_ref] = ExternalJobStatus(
            state="completed", output_refs=[output_ref]
        )


def invoice_dict(code="FAC-100", cif="B12345678", name="Suministros Norte SL", total=121.0, items=None):
    return {
        "invoiceCode": code,
        "provider": {"name": name, "cif": cif},
        "issueDate": "2024-03-15",
        "totalAmount": total,
        "ivaPercentage": 21,
        "retentionAmount": 0,
        "items": items
        if items is not None
        else [
            {
                "materialName": "Tubo PVC 40mm",
                "materialCode": "PVC-40",
                "quantity": 10,
                "unitPrice": 10.0,
                "totalPrice": 100.0,
                "workOrder": "OT-1",
            }
        ],
    }


def result_line(key, text):
    return {"key": key, "response": {"candidates": [{"content": {"parts": [{"text": text}]}}]}}


@pytest.fixture
def batch_repo():
    return FakeBatchRepository()


@pytest.fixture
def invoice_store():
    return FakeInvoiceStore()


@pytest.fixture
def extraction():
    return FakeExtraction()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_attempts=3, delay_seconds=3, backoff=1.0, sleep=sleeps.append)


@pytest.fixture
def progress_channel():
    return ProgressChannel()


@pytest.fixture
def service(batch_repo, invoice_store, extraction, retry_policy, progress_channel):
    return BatchService(
        batch_repo,
        invoice_store,
        extraction,
        retry_policy=retry_policy,
        monitor=ProgressMonitor(progress_channel),
        chunk_size=25,
        chunk_max_bytes=40 * 1024 * 1024,
    )


@pytest.fixture
def make_files():
    def _make(count, size=1000):
        return [BatchFile(name=f"factura-{i + 1}.pdf", path=f"/tmp/factura-{i + 1}.pdf", size=size) for i in range(count)]

    return _make


@pytest.fixture
def invoice_payload():
    return invoice_dict


@pytest.fixture
def make_line():
    return result_line
