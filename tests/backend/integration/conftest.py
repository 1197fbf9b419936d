import importlib
from types import SimpleNamespace

import pytest

fastapi = pytest.importorskip("fastapi")
TestClient = pytest.importorskip("fastapi.testclient").TestClient

from facturas.application.batch_service import BatchService  # noqa: E402
from facturas.application.progress import PendingIndicator, ProgressMonitor  # noqa: E402


class DummyPool:
    """Minimal pool stub to avoid real DB connections in integration tests."""

    def connection(self):
        raise RuntimeError("Connection should not be used in mocked integration tests")


@pytest.fixture
def app_modules(monkeypatch, batch_repo, invoice_store, extraction, retry_policy, progress_channel):
    """
    Load app + routers with a fake pool and an in-memory BatchService.
    Celery tasks are replaced by recorders so nothing is enqueued.
    """
    app_module = importlib.import_module("facturas.main")
    services = importlib.import_module("facturas.application.services")
    batches = importlib.import_module("facturas.interfaces.api.routers.batches")
    webhooks = importlib.import_module("facturas.interfaces.api.routers.webhooks")

    fake_pool = DummyPool()
    monkeypatch.setattr(app_module.db, "init_pool", lambda: None)
    monkeypatch.setattr(app_module.db, "close_pool", lambda: None)
    monkeypatch.setattr(app_module.db, "pool", fake_pool)
    monkeypatch.setattr(app_module.db, "get_pool", lambda: fake_pool)

    service = BatchService(
        batch_repo,
        invoice_store,
        extraction,
        retry_policy=retry_policy,
        monitor=ProgressMonitor(progress_channel),
        chunk_size=2,
    )
    indicator = PendingIndicator(progress_channel)
    app_module.app.dependency_overrides[services.get_batch_service] = lambda: service
    app_module.app.dependency_overrides[services.get_pending_indicator] = lambda: indicator

    dispatched = []
    polled = []
    monkeypatch.setattr(
        batches, "dispatch_chunk", SimpleNamespace(delay=lambda job_id, paths: dispatched.append((job_id, paths)))
    )
    monkeypatch.setattr(webhooks, "poll_batch", SimpleNamespace(delay=polled.append))

    yield {
        "app": app_module.app,
        "batches": batches,
        "webhooks": webhooks,
        "service": service,
        "dispatched": dispatched,
        "polled": polled,
    }
    app_module.app.dependency_overrides.clear()


@pytest.fixture
def client(app_modules):
    return TestClient(app_modules["app"])
