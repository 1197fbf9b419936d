import pytest

pytest.importorskip("celery")

from facturas.application.batch_service import BatchFile  # noqa: E402
from facturas.core.domain.batch import BatchStatus  # noqa: E402
from facturas.interfaces.worker import tasks  # noqa: E402


@pytest.fixture
def worker(monkeypatch, service):
    monkeypatch.setattr(tasks.db, "get_pool", lambda: object())
    monkeypatch.setattr(tasks, "get_batch_service", lambda: service)
    return service


@pytest.fixture
def staged(tmp_path):
    paths = []
    for name in ("a.pdf", "b.pdf"):
        path = tmp_path / name
        path.write_bytes(b"%PDF-1.4")
        paths.append(str(path))
    return paths


def _plan(service, paths):
    _, planned = service.create_batches([BatchFile.from_path(p) for p in paths])
    return planned[0][0].id


def test_dispatch_chunk_submits_staged_files(worker, extraction, staged):
    job_id = _plan(worker, staged)

    assert tasks.dispatch_chunk(job_id, staged) == "PROCESSING"
    assert [f.name for f in extraction.submitted[0]] == ["a.pdf", "b.pdf"]


def test_dispatch_chunk_marks_batch_failed_when_files_are_gone(worker, staged, tmp_path):
    job_id = _plan(worker, staged)

    with pytest.raises(FileNotFoundError):
        tasks.dispatch_chunk(job_id, staged + [str(tmp_path / "borrado.pdf")])

    job = worker.get_status(job_id)
    assert job.status is BatchStatus.FAILED
    assert job.completed_at is not None


def test_poll_tasks_report_status(worker, extraction, staged):
    job_id = _plan(worker, staged)
    tasks.dispatch_chunk(job_id, staged)

    assert tasks.poll_batch(job_id) == "PROCESSING"
    assert tasks.poll_batches() == 1
    assert tasks.poll_batch("desconocido") is None
