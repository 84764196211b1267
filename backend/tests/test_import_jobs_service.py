"""Tenant-scoped operations exposed to API handlers."""

from __future__ import annotations

import pytest

from hub_importer.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    ValidationError,
    WorkerNotRunningError,
)
from hub_importer.schemas.job import ImportJobCreate
from hub_importer.services import import_jobs
from hub_importer.services.import_jobs import ImportJobService
from hub_importer.workers.import_worker import ImportWorker

FACTORY = "factory-a"
OTHER_FACTORY = "factory-b"


@pytest.fixture()
def worker(store, processor):
    worker = ImportWorker(store, processor, poll_interval_seconds=0.05)
    worker.start()
    yield worker
    worker.stop()


@pytest.fixture()
def service(store, worker) -> ImportJobService:
    return ImportJobService(store, worker)


def test_create_returns_pending_projection(service: ImportJobService) -> None:
    job = service.create(ImportJobCreate(factory_id=FACTORY, asset_id="asset-1", requested_by="user-7"))

    assert job.status == "pending"
    assert job.factory_id == FACTORY
    assert job.progress_pct == 0.0
    assert [j.id for j in service.list(FACTORY)] == [job.id]


def test_create_validation_errors_propagate(service: ImportJobService) -> None:
    with pytest.raises(ValidationError):
        service.create({"asset_id": "asset-1"})


def test_other_tenants_see_nothing(service: ImportJobService, make_rows) -> None:
    job = service.create({"factory_id": FACTORY})

    assert service.list(OTHER_FACTORY) == []
    with pytest.raises(JobNotFoundError):
        service.get(job.id, OTHER_FACTORY)
    with pytest.raises(JobNotFoundError):
        service.cancel(job.id, OTHER_FACTORY)
    with pytest.raises(JobNotFoundError):
        service.retry(job.id, OTHER_FACTORY)
    with pytest.raises(JobNotFoundError):
        service.submit_preloaded(job.id, OTHER_FACTORY, make_rows(2))
    with pytest.raises(JobNotFoundError):
        service.progress(job.id, OTHER_FACTORY)
    assert service.get(job.id, FACTORY).status == "pending"


def test_cancel_then_retry_then_submit(service: ImportJobService, make_rows) -> None:
    job = service.create({"factory_id": FACTORY, "asset_id": "asset-1"})

    assert service.cancel(job.id, FACTORY).status == "cancelled"
    with pytest.raises(InvalidTransitionError):
        service.cancel(job.id, FACTORY)

    assert service.retry(job.id, FACTORY).status == "pending"

    result = service.submit_preloaded(job.id, FACTORY, make_rows(1200), timeout=30)
    assert result.status == "done"
    assert result.rows_done == 1200
    assert result.progress_pct == pytest.approx(100.0)

    with pytest.raises(InvalidTransitionError):
        service.retry(job.id, FACTORY)


def test_progress_is_empty_without_snapshots(service: ImportJobService, monkeypatch) -> None:
    monkeypatch.setattr(import_jobs, "fetch_progress", lambda job_id: {})
    job = service.create({"factory_id": FACTORY})

    assert service.progress(job.id, FACTORY) == {}


def test_submit_without_worker(store) -> None:
    service = ImportJobService(store)
    job = service.create({"factory_id": FACTORY})

    with pytest.raises(WorkerNotRunningError):
        service.submit_preloaded(job.id, FACTORY, [])
