"""In-process import worker.

One loop per process instance. It waits on two event sources, the poll timer
and a bounded queue of direct submissions, and runs whatever arrives to
completion before looking again, so an instance never processes two jobs at
once. Instances coordinate only through the job table.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from hub_importer.core.config import Settings, get_settings
from hub_importer.core.exceptions import ImportJobError, WorkerNotRunningError
from hub_importer.schemas.job import ImportJobStatus
from hub_importer.schemas.telemetry import TelemetryRow
from hub_importer.services.batch_processor import BatchProcessor, JobOutcome
from hub_importer.services.job_store import ImportJobStore
from hub_importer.services.sources import (
    POLLABLE_SOURCE_TYPES,
    PreloadedSource,
    SourceAdapter,
    build_polled_source,
)
from hub_importer.services.telemetry_writer import TelemetryWriter

logger = logging.getLogger(__name__)


@dataclass
class _Submission:
    job_id: str
    factory_id: str
    source: PreloadedSource
    future: Future = field(default_factory=Future)


class ImportWorker:
    def __init__(
        self,
        store: ImportJobStore,
        processor: BatchProcessor,
        *,
        poll_interval_seconds: float | None = None,
        stale_after_seconds: float | None = None,
        queue_size: int | None = None,
        pollable_source_types: Iterable[str] = POLLABLE_SOURCE_TYPES,
        source_factory: Callable[[ImportJobStatus], SourceAdapter] = build_polled_source,
    ):
        settings = get_settings()
        self.store = store
        self.processor = processor
        self.poll_interval_seconds = poll_interval_seconds or settings.import_poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds or settings.import_stale_after_seconds
        self.pollable_source_types = tuple(pollable_source_types)
        self._source_factory = source_factory
        self._submissions: queue.Queue[_Submission | None] = queue.Queue(
            maxsize=queue_size or settings.import_submission_queue_size
        )
        self._stop_event = threading.Event()
        self._running = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._running.is_set() and not self._stop_event.is_set()

    def start(self) -> None:
        """Run the loop on a background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._running.set()
        self._thread = threading.Thread(target=self.run, name="import-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        """Ask the loop to exit once the job in hand (if any) reaches a terminal state."""
        self._stop_event.set()
        try:
            self._submissions.put_nowait(None)
        except queue.Full:
            pass
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def run(self) -> None:
        """Recovery sweep, then serve the poll timer and submissions until stopped."""
        self._running.set()
        logger.info(
            f"Import worker started (poll interval: {self.poll_interval_seconds}s)"
        )
        try:
            self.recover()
        except SQLAlchemyError as exc:
            logger.error(f"Stale job recovery failed: {exc}", exc_info=True)

        next_tick = time.monotonic()
        try:
            while not self._stop_event.is_set():
                now = time.monotonic()
                # A due tick goes first so a busy submission queue cannot starve polling
                if now >= next_tick:
                    next_tick = now + self.poll_interval_seconds
                    try:
                        self.poll_once()
                    except Exception as exc:
                        logger.error(f"Poll error: {exc}", exc_info=True)
                    continue

                try:
                    submission = self._submissions.get(timeout=next_tick - now)
                except queue.Empty:
                    continue
                if submission is not None:
                    self._handle_submission(submission)
        finally:
            self._running.clear()
            self._drain_submissions()
            logger.info("Import worker stopped")

    def recover(self) -> int:
        """Reset jobs orphaned in ``running`` by a crashed or redeployed instance."""
        return self.store.recover_stale(timedelta(seconds=self.stale_after_seconds))

    def poll_once(self) -> JobOutcome | None:
        """Claim at most one pending job and process it; ``None`` when the queue is empty."""
        job = self.store.claim_one_pending(self.pollable_source_types)
        if job is None:
            return None
        logger.info(
            f"Claimed import job {job.id} (factory={job.factory_id}, type={job.source_type})"
        )
        try:
            source = self._source_factory(job)
        except Exception as exc:
            return self.processor.fail(job, exc)
        return self.processor.process(job, source)

    def submit_preloaded(
        self,
        job_id: str,
        factory_id: str,
        rows: Sequence[TelemetryRow | Mapping[str, Any]] | PreloadedSource,
        timeout: float | None = None,
    ) -> ImportJobStatus:
        """Hand rows for a pending job to this worker and wait for the job to finish.

        Returns the final job projection; processing failures show up as
        ``status="failed"`` with ``error_message`` set. Raises
        ``JobNotFoundError`` / ``InvalidTransitionError`` when the job cannot be
        claimed and ``WorkerNotRunningError`` when no loop is serving submissions.
        """
        if not self.is_running:
            raise WorkerNotRunningError("Import worker is not running")
        source = rows if isinstance(rows, PreloadedSource) else PreloadedSource(rows)
        submission = _Submission(job_id=job_id, factory_id=factory_id, source=source)
        try:
            self._submissions.put(submission, timeout=timeout)
        except queue.Full as exc:
            raise ImportJobError("Import worker submission queue is full") from exc
        if not self._running.is_set():
            # Loop exited between the check and the put
            self._drain_submissions()
        return submission.future.result(timeout=timeout)

    def _handle_submission(self, submission: _Submission) -> None:
        if not submission.future.set_running_or_notify_cancel():
            return
        try:
            job = self.store.claim_submitted(
                submission.job_id, submission.factory_id, submission.source.rows_total or 0
            )
            logger.info(f"Preloaded job {job.id} started ({job.rows_total} rows)")
            self.processor.process(job, submission.source)
            result = self.store.get(job.id, submission.factory_id)
        except Exception as exc:
            submission.future.set_exception(exc)
            return
        submission.future.set_result(result)

    def _drain_submissions(self) -> None:
        while True:
            try:
                submission = self._submissions.get_nowait()
            except queue.Empty:
                return
            if submission is None:
                continue
            if submission.future.set_running_or_notify_cancel():
                submission.future.set_exception(
                    WorkerNotRunningError("Import worker stopped before the job was processed")
                )


def build_import_worker(
    session_factory: sessionmaker | None = None,
    settings: Settings | None = None,
) -> ImportWorker:
    """Wire store, writer and processor from settings."""
    settings = settings or get_settings()
    store = ImportJobStore(
        session_factory, default_batch_size=settings.import_default_batch_size
    )
    processor = BatchProcessor(
        store,
        TelemetryWriter(session_factory),
        default_batch_size=settings.import_default_batch_size,
        throttle_seconds=settings.import_batch_throttle_ms / 1000,
        max_runtime_seconds=settings.import_max_runtime_seconds,
    )
    return ImportWorker(
        store,
        processor,
        poll_interval_seconds=settings.import_poll_interval_seconds,
        stale_after_seconds=settings.import_stale_after_seconds,
        queue_size=settings.import_submission_queue_size,
    )
