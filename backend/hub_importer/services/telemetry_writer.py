"""Persist import batches into telemetry_log."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from hub_importer.db.base import as_utc
from hub_importer.db.models.telemetry_log import TelemetryLog
from hub_importer.db.session import SessionLocal, session_scope
from hub_importer.schemas.job import ImportJobStatus
from hub_importer.schemas.telemetry import TelemetryRow

logger = logging.getLogger(__name__)


class TelemetryWriter:
    """Writes one batch per transaction; a failed batch leaves nothing behind."""

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory or SessionLocal

    def write_batch(self, job: ImportJobStatus, rows: Sequence[TelemetryRow]) -> int:
        """Insert ``rows`` for ``job`` atomically and return how many were written.

        Rows are always stamped with the job's factory; a row without an asset
        inherits the job's asset.
        """
        if not rows:
            return 0
        payload = [
            {
                "ts": as_utc(row.ts),
                "factory_id": job.factory_id,
                "asset_id": row.asset_id or job.asset_id,
                "metric_key": row.metric_key,
                "metric_value": row.metric_value,
                "status": row.status or "OK",
                "raw": row.raw,
                "correlation_id": row.correlation_id or job.id,
            }
            for row in rows
        ]
        try:
            with session_scope(self._session_factory) as session:
                session.execute(insert(TelemetryLog), payload)
        except SQLAlchemyError as e:
            logger.error(f"Database error writing batch for job {job.id}: {e}", exc_info=True)
            raise
        return len(payload)

    def range_has_rows(
        self, factory_id: str, asset_id: str, start: datetime, end: datetime
    ) -> bool:
        """Whether any sample already exists for the asset in ``[start, end]``."""
        with session_scope(self._session_factory) as session:
            found = session.scalar(
                select(TelemetryLog.id)
                .where(
                    TelemetryLog.factory_id == factory_id,
                    TelemetryLog.asset_id == asset_id,
                    TelemetryLog.ts >= as_utc(start),
                    TelemetryLog.ts <= as_utc(end),
                )
                .limit(1)
            )
            return found is not None
