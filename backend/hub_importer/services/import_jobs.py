"""Operations exposed to API handlers: create, inspect, cancel, retry and submit import jobs.

Every call is scoped to the caller's factory; a job belonging to another
factory behaves exactly like a job that does not exist.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from hub_importer.core.exceptions import JobNotFoundError, WorkerNotRunningError
from hub_importer.schemas.job import ImportJobCreate, ImportJobStatus
from hub_importer.schemas.telemetry import TelemetryRow
from hub_importer.services.job_store import DEFAULT_LIST_LIMIT, ImportJobStore
from hub_importer.services.progress_tracker import fetch_progress
from hub_importer.workers.import_worker import ImportWorker

logger = logging.getLogger(__name__)


class ImportJobService:
    def __init__(self, store: ImportJobStore, worker: ImportWorker | None = None):
        self.store = store
        self.worker = worker

    def create(self, params: ImportJobCreate | Mapping[str, Any]) -> ImportJobStatus:
        job_id = self.store.create(params)
        factory_id = (
            params.factory_id if isinstance(params, ImportJobCreate) else params["factory_id"]
        )
        return self.get(job_id, factory_id)

    def get(self, job_id: str, factory_id: str) -> ImportJobStatus:
        job = self.store.get(job_id, factory_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list(self, factory_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[ImportJobStatus]:
        return self.store.list(factory_id, limit)

    def progress(self, job_id: str, factory_id: str) -> dict[str, Any]:
        """Latest Redis snapshot for a job the caller owns (empty when none was published)."""
        self.get(job_id, factory_id)
        return fetch_progress(job_id)

    def cancel(self, job_id: str, factory_id: str) -> ImportJobStatus:
        self.store.request_cancel(job_id, factory_id)
        return self.get(job_id, factory_id)

    def retry(self, job_id: str, factory_id: str) -> ImportJobStatus:
        self.store.retry(job_id, factory_id)
        return self.get(job_id, factory_id)

    def submit_preloaded(
        self,
        job_id: str,
        factory_id: str,
        rows: Sequence[TelemetryRow | Mapping[str, Any]],
        timeout: float | None = None,
    ) -> ImportJobStatus:
        """Run a pending preloaded job on this instance's worker and return its final state."""
        self.get(job_id, factory_id)
        if self.worker is None:
            raise WorkerNotRunningError("No import worker attached to this service")
        logger.info(f"Submitting {len(rows)} preloaded rows for job {job_id}")
        return self.worker.submit_preloaded(job_id, factory_id, rows, timeout=timeout)
