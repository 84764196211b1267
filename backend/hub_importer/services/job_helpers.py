"""Shared helpers for shaping job responses."""
from __future__ import annotations

from datetime import datetime

from hub_importer.db.base import as_utc
from hub_importer.db.models.import_job import ImportJob
from hub_importer.schemas.job import ImportJobStatus


def progress_pct(rows_done: int, rows_total: int) -> float:
    if not rows_total or rows_total <= 0:
        return 0.0
    return rows_done / rows_total * 100


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back naive
    return as_utc(value) if value is not None else None


def serialize_job(job: ImportJob) -> ImportJobStatus:
    """Snapshot a job row into the status projection (safe to use after the session closes)."""
    rows_total = job.rows_total or 0
    rows_done = job.rows_done or 0
    return ImportJobStatus(
        id=job.id,
        factory_id=job.factory_id,
        asset_id=job.asset_id,
        status=job.status,
        source_type=job.source_type,
        source_config=job.source_config or {},
        batch_size=job.batch_size,
        rows_total=rows_total,
        rows_done=rows_done,
        progress_pct=progress_pct(rows_done, rows_total),
        error_message=job.error_message,
        period_start=_utc(job.period_start),
        period_end=_utc(job.period_end),
        started_at=_utc(job.started_at),
        finished_at=_utc(job.finished_at),
        created_at=_utc(job.created_at),
        updated_at=_utc(job.updated_at),
    )
