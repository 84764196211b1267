"""Batch processor: progress, cancellation, failure, idempotent resume."""

from __future__ import annotations

import itertools
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from hub_importer.db.models.telemetry_log import TelemetryLog
from hub_importer.db.session import session_scope
from hub_importer.services import batch_processor as batch_processor_module
from hub_importer.services.batch_processor import BatchProcessor
from hub_importer.services.job_store import ImportJobStore
from hub_importer.services.sources import PreloadedSource
from hub_importer.services.telemetry_writer import TelemetryWriter

FACTORY = "factory-a"


class FlakyWriter(TelemetryWriter):
    """Fails the n-th write_batch call."""

    def __init__(self, session_factory, fail_on: int, error: Exception):
        super().__init__(session_factory)
        self.fail_on = fail_on
        self.error = error
        self.calls = 0

    def write_batch(self, job, rows):
        self.calls += 1
        if self.calls == self.fail_on:
            raise self.error
        return super().write_batch(job, rows)


class CancellingWriter(TelemetryWriter):
    """Requests a cancel right after the first batch lands."""

    def __init__(self, session_factory, store: ImportJobStore):
        super().__init__(session_factory)
        self.store = store

    def write_batch(self, job, rows):
        written = super().write_batch(job, rows)
        self.store.request_cancel(job.id, job.factory_id)
        return written


class ReclaimingWriter(TelemetryWriter):
    """After the first batch, the job is recovered and claimed by another instance."""

    def __init__(self, session_factory, store: ImportJobStore):
        super().__init__(session_factory)
        self.store = store
        self.reclaimed = None

    def write_batch(self, job, rows):
        written = super().write_batch(job, rows)
        if self.reclaimed is None:
            self.store.recover_stale(timedelta(seconds=-1))
            self.reclaimed = self.store.claim_submitted(job.id, job.factory_id, 3000)
        return written


class BrokenRangeCheckWriter(TelemetryWriter):
    def range_has_rows(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("statement timeout"))


def _processor(store, writer, **kwargs) -> BatchProcessor:
    kwargs.setdefault("throttle_seconds", 0)
    kwargs.setdefault("max_runtime_seconds", 3600)
    return BatchProcessor(store, writer, default_batch_size=1000, sleep=lambda _: None, **kwargs)


def _start(store: ImportJobStore, rows: list[dict], batch_size: int = 1000):
    job_id = store.create({"factory_id": FACTORY, "asset_id": "asset-1", "batch_size": batch_size})
    return store.claim_submitted(job_id, FACTORY, len(rows))


@pytest.fixture()
def snapshots(monkeypatch) -> list[dict]:
    published: list[dict] = []

    def _record(job_id, **payload):
        published.append({"job_id": job_id, **payload})

    monkeypatch.setattr(batch_processor_module, "publish_progress", _record)
    return published


def test_processes_rows_in_batches_and_reports_progress(
    store, processor, make_rows, count_rows, snapshots
) -> None:
    rows = make_rows(2500)
    job = _start(store, rows)

    outcome = processor.process(job, PreloadedSource(rows))

    assert outcome.status == "done"
    assert outcome.batches == 3
    assert outcome.rows_written == 2500
    assert outcome.rows_skipped == 0

    running = [s for s in snapshots if s["status"] == "running"]
    assert [s["rows_done"] for s in running] == [1000, 2000, 2500]
    assert [s["rows_done"] * 100 // s["rows_total"] for s in running] == [40, 80, 100]
    assert snapshots[-1]["status"] == "done"

    final = store.get(job.id, FACTORY)
    assert final.status == "done"
    assert final.rows_done == 2500
    assert final.progress_pct == pytest.approx(100.0)
    assert final.finished_at is not None
    assert count_rows() == 2500


def test_written_rows_carry_job_tenant_and_correlation(
    store, processor, make_rows, session_factory
) -> None:
    rows = make_rows(3)
    rows[0].pop("asset_id")
    job = _start(store, rows)

    processor.process(job, PreloadedSource(rows))

    with session_scope(session_factory) as session:
        written = session.scalars(select(TelemetryLog)).all()
        assert {row.factory_id for row in written} == {FACTORY}
        assert {row.asset_id for row in written} == {"asset-1"}
        assert {row.correlation_id for row in written} == {job.id}


def test_throttle_pauses_between_batches(store, writer, make_rows) -> None:
    pauses: list[float] = []
    processor = BatchProcessor(
        store,
        writer,
        default_batch_size=1000,
        throttle_seconds=0.05,
        max_runtime_seconds=3600,
        sleep=pauses.append,
    )
    rows = make_rows(2500)

    processor.process(_start(store, rows), PreloadedSource(rows))

    assert pauses == [0.05, 0.05, 0.05]


def test_cancel_takes_effect_at_next_batch_boundary(
    store, session_factory, make_rows, count_rows
) -> None:
    rows = make_rows(3000)
    job = _start(store, rows)
    processor = _processor(store, CancellingWriter(session_factory, store))

    outcome = processor.process(job, PreloadedSource(rows))

    assert outcome.status == "cancelled"
    assert outcome.rows_done == 1000
    final = store.get(job.id, FACTORY)
    assert final.status == "cancelled"
    assert final.rows_done == 1000
    assert count_rows() == 1000


def test_write_failure_fails_whole_job(store, session_factory, make_rows, count_rows) -> None:
    rows = make_rows(2500)
    job = _start(store, rows)
    processor = _processor(store, FlakyWriter(session_factory, 2, RuntimeError("disk full")))

    outcome = processor.process(job, PreloadedSource(rows))

    assert outcome.status == "failed"
    assert outcome.error_message == "disk full"
    final = store.get(job.id, FACTORY)
    assert final.status == "failed"
    assert final.error_message == "disk full"
    assert final.rows_done == 1000
    assert count_rows() == 1000


def test_range_check_error_does_not_block_the_batch(
    store, session_factory, make_rows, count_rows
) -> None:
    rows = make_rows(1500)
    job = _start(store, rows)
    processor = _processor(store, BrokenRangeCheckWriter(session_factory))

    outcome = processor.process(job, PreloadedSource(rows))

    assert outcome.status == "done"
    assert outcome.rows_written == 1500
    assert count_rows() == 1500


def test_max_runtime_fails_job_at_batch_boundary(store, writer, make_rows) -> None:
    ticks = itertools.count(step=100)
    processor = _processor(
        store, writer, max_runtime_seconds=250, clock=lambda: next(ticks)
    )
    rows = make_rows(3000)
    job = _start(store, rows)

    outcome = processor.process(job, PreloadedSource(rows))

    assert outcome.status == "failed"
    assert outcome.rows_done == 1000
    assert "maximum runtime" in store.get(job.id, FACTORY).error_message


def test_source_failure_fails_job(store, processor, make_rows) -> None:
    rows = make_rows(10)
    job = _start(store, rows)
    source = PreloadedSource(rows)
    list(source.iter_batches(5))

    outcome = processor.process(job, source)

    assert outcome.status == "failed"
    assert "already consumed" in outcome.error_message


def test_retry_resumes_without_duplicating_rows(
    store, session_factory, make_rows, count_rows
) -> None:
    rows = make_rows(2500)
    job = _start(store, rows, batch_size=600)
    flaky = _processor(
        store,
        FlakyWriter(session_factory, 3, OperationalError("INSERT", {}, Exception("connection reset"))),
    )

    first = flaky.process(job, PreloadedSource(rows))

    assert first.status == "failed"
    assert store.get(job.id, FACTORY).rows_done == 1200
    assert count_rows() == 1200

    store.retry(job.id, FACTORY)
    resumed = store.claim_submitted(job.id, FACTORY, len(rows))
    second = _processor(store, TelemetryWriter(session_factory)).process(
        resumed, PreloadedSource(rows)
    )

    assert second.status == "done"
    assert second.rows_skipped == 1200
    assert second.rows_written == 1300
    assert second.rows_done == 2500
    assert store.get(job.id, FACTORY).rows_done == 2500
    assert count_rows() == 2500


def test_job_that_left_running_is_not_touched(store, processor, make_rows, count_rows) -> None:
    rows = make_rows(5)
    job = _start(store, rows)
    store.mark_failed(job.id, "failed elsewhere")

    outcome = processor.process(job, PreloadedSource(rows))

    assert outcome.status == "failed"
    assert store.get(job.id, FACTORY).error_message == "failed elsewhere"
    assert count_rows() == 0


def test_reclaimed_job_is_left_to_its_new_owner(
    store, session_factory, make_rows, count_rows
) -> None:
    rows = make_rows(3000)
    job = _start(store, rows)
    writer = ReclaimingWriter(session_factory, store)

    outcome = _processor(store, writer).process(job, PreloadedSource(rows))

    assert outcome.status == "running"
    assert outcome.batches == 1
    assert count_rows() == 1000

    current = store.get(job.id, FACTORY)
    assert current.status == "running"
    assert current.started_at == writer.reclaimed.started_at
    assert current.rows_done == 0
    assert current.finished_at is None


def test_remote_style_source_without_total_finishes_at_full_progress(
    store, processor, make_rows, snapshots
) -> None:
    rows = make_rows(5)
    job_id = store.create({"factory_id": FACTORY, "asset_id": "asset-1", "batch_size": 2})
    job = store.claim_submitted(job_id, FACTORY, 0)
    source = PreloadedSource(rows)
    source.rows_total = None

    outcome = processor.process(job, source)

    assert outcome.status == "done"
    assert outcome.rows_total == 5
    assert snapshots[-1]["status"] == "done"
    assert snapshots[-1]["rows_total"] == 5
    final = store.get(job.id, FACTORY)
    assert final.rows_total == 5
    assert final.progress_pct == pytest.approx(100.0)
