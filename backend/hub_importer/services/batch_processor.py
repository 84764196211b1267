"""Drive one import job through its rows, batch by batch.

Per batch: honour the runtime limit, re-read the job status so an operator
cancel takes effect at the boundary, skip batches whose range already holds
data, write the rest in one transaction, record progress, then pause briefly
so live ingestion keeps priority on the shared connection pool.

Any error fails the whole job. Nothing raised while processing leaves this
module: the outcome is returned and recorded on the job row.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from hub_importer.core.config import get_settings
from hub_importer.core.exceptions import ImportJobError, JobTimeoutError
from hub_importer.db.models.import_job import (
    STATUS_CANCELLED,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_RUNNING,
)
from hub_importer.schemas.job import ImportJobStatus
from hub_importer.schemas.telemetry import TelemetryRow
from hub_importer.services.job_store import ImportJobStore
from hub_importer.services.progress_tracker import publish_progress
from hub_importer.services.sources import SourceAdapter
from hub_importer.services.telemetry_writer import TelemetryWriter

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    job_id: str
    status: str
    rows_done: int = 0
    rows_total: int = 0
    rows_written: int = 0
    rows_skipped: int = 0
    batches: int = 0
    error_message: str | None = None


class BatchProcessor:
    def __init__(
        self,
        store: ImportJobStore,
        writer: TelemetryWriter,
        *,
        default_batch_size: int | None = None,
        throttle_seconds: float | None = None,
        max_runtime_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.store = store
        self.writer = writer
        self.default_batch_size = default_batch_size or settings.import_default_batch_size
        self.throttle_seconds = (
            settings.import_batch_throttle_ms / 1000
            if throttle_seconds is None
            else throttle_seconds
        )
        self.max_runtime_seconds = max_runtime_seconds or settings.import_max_runtime_seconds
        self._sleep = sleep
        self._clock = clock

    def process(self, job: ImportJobStatus, source: SourceAdapter) -> JobOutcome:
        """Run a claimed job to done, failed or cancelled."""
        batch_size = job.batch_size if job.batch_size and job.batch_size > 0 else self.default_batch_size
        outcome = JobOutcome(
            job_id=job.id,
            status=STATUS_RUNNING,
            rows_total=source.rows_total or job.rows_total or 0,
        )
        started = self._clock()
        logger.info(
            f"Processing import job {job.id} ({job.source_type}, batch_size={batch_size}, "
            f"rows_total={outcome.rows_total or '?'})"
        )

        try:
            for batch in source.iter_batches(batch_size):
                if self._clock() - started > self.max_runtime_seconds:
                    raise JobTimeoutError(
                        f"Import exceeded maximum runtime of {self.max_runtime_seconds:.0f}s"
                    )
                current = self.store.status_of(job.id, job.started_at)
                if current == STATUS_CANCELLED:
                    return self._cancelled(job, outcome)
                if current != STATUS_RUNNING:
                    return self._released(job, outcome, current)

                outcome.batches += 1
                batch_started = self._clock()
                if self._already_imported(job, batch, outcome.batches):
                    outcome.rows_skipped += len(batch)
                    outcome.rows_done += len(batch)
                else:
                    written = self.writer.write_batch(job, batch)
                    outcome.rows_written += written
                    outcome.rows_done += written
                    elapsed = self._clock() - batch_started
                    rate = written / elapsed if elapsed > 0 else float(written)
                    logger.info(
                        f"[Job {job.id}] batch {outcome.batches} - {written} rows "
                        f"in {elapsed * 1000:.0f}ms ({rate:.0f} rows/s)"
                    )

                if source.rows_total is not None:
                    outcome.rows_total = max(source.rows_total, outcome.rows_done)
                self.store.update_progress(
                    job.id,
                    outcome.rows_done,
                    rows_total=outcome.rows_total or None,
                    started_at=job.started_at,
                )
                publish_progress(
                    job.id,
                    status=STATUS_RUNNING,
                    rows_done=outcome.rows_done,
                    rows_total=outcome.rows_total,
                    message=f"Processed {outcome.rows_done}/{outcome.rows_total or '?'} rows",
                    meta={"written": outcome.rows_written, "skipped": outcome.rows_skipped},
                )
                if self.throttle_seconds > 0:
                    self._sleep(self.throttle_seconds)
        except Exception as exc:
            return self.fail(job, exc, outcome)
        finally:
            source.close()

        if not self.store.mark_done(job.id, outcome.rows_done, started_at=job.started_at):
            current = self.store.status_of(job.id, job.started_at)
            # A cancel that lands during the final batch still wins
            if current == STATUS_CANCELLED:
                return self._cancelled(job, outcome)
            return self._released(job, outcome, current)

        outcome.status = STATUS_DONE
        outcome.rows_total = max(outcome.rows_total, outcome.rows_done)
        total_elapsed = self._clock() - started
        logger.info(
            f"Import job {job.id} done: {outcome.rows_done} rows "
            f"({outcome.rows_written} written, {outcome.rows_skipped} skipped) "
            f"in {total_elapsed:.1f}s"
        )
        self._publish_terminal(outcome, "Import complete")
        return outcome

    def fail(
        self,
        job: ImportJobStatus,
        exc: BaseException,
        outcome: JobOutcome | None = None,
    ) -> JobOutcome:
        """Record ``exc`` as the reason the whole job failed."""
        outcome = outcome or JobOutcome(job_id=job.id, status=STATUS_RUNNING)
        message = str(exc) or exc.__class__.__name__
        logger.error(
            f"Import job {job.id} FAILED after {outcome.rows_done} rows: {message}",
            exc_info=not isinstance(exc, ImportJobError),
        )
        if self.store.mark_failed(job.id, message, started_at=job.started_at):
            outcome.status = STATUS_FAILED
            outcome.error_message = message
            self._publish_terminal(outcome, "Import failed")
        else:
            outcome.status = self.store.status_of(job.id) or STATUS_FAILED
        return outcome

    def _cancelled(self, job: ImportJobStatus, outcome: JobOutcome) -> JobOutcome:
        self.store.mark_cancelled(job.id, outcome.rows_done, started_at=job.started_at)
        outcome.status = STATUS_CANCELLED
        logger.info(f"Import job {job.id} CANCELLED at {outcome.rows_done} rows")
        self._publish_terminal(outcome, "Import cancelled")
        return outcome

    def _released(
        self, job: ImportJobStatus, outcome: JobOutcome, current: str | None
    ) -> JobOutcome:
        """The row left our claim (recovered, re-claimed or finished elsewhere); stop touching it.

        ``current`` is ``None`` when the row now carries another claim.
        """
        outcome.status = current or self.store.status_of(job.id) or STATUS_FAILED
        logger.warning(
            f"Import job {job.id} is no longer held by this worker "
            f"(now {outcome.status}) after {outcome.rows_done} rows; stopping"
        )
        return outcome

    def _already_imported(
        self, job: ImportJobStatus, batch: Sequence[TelemetryRow], batch_number: int
    ) -> bool:
        """Range check: any existing sample in the batch's span skips the whole batch.

        A batch that only partly overlaps earlier data is skipped too; rows left
        by a crashed run cannot be told apart from legitimate data.
        """
        if not batch:
            return False
        asset_id = batch[0].asset_id or job.asset_id
        if not asset_id:
            return False
        start = min(row.ts for row in batch)
        end = max(row.ts for row in batch)
        try:
            exists = self.writer.range_has_rows(job.factory_id, asset_id, start, end)
        except SQLAlchemyError as exc:
            logger.warning(
                f"[Job {job.id}] range check failed for batch {batch_number}, "
                f"writing without idempotency check: {exc}"
            )
            return False
        if exists:
            logger.warning(
                f"[Job {job.id}] batch {batch_number} SKIPPED: rows already exist for "
                f"asset {asset_id} in [{start.isoformat()} .. {end.isoformat()}]"
            )
        return exists

    def _publish_terminal(self, outcome: JobOutcome, message: str) -> None:
        publish_progress(
            outcome.job_id,
            status=outcome.status,
            rows_done=outcome.rows_done,
            rows_total=outcome.rows_total,
            message=message,
            meta={
                "written": outcome.rows_written,
                "skipped": outcome.rows_skipped,
                "error": outcome.error_message,
            },
        )
