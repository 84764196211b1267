"""Shared fixtures: a fresh file-backed SQLite database per test."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PROGRESS_PUBLISH_ENABLED", "false")
os.environ.setdefault("IMPORT_BATCH_THROTTLE_MS", "0")

import pytest
from sqlalchemy import func, select

from hub_importer.db import models  # noqa: F401
from hub_importer.db.base import Base
from hub_importer.db.models.telemetry_log import TelemetryLog
from hub_importer.db.session import build_engine, build_session_factory, session_scope
from hub_importer.services.batch_processor import BatchProcessor
from hub_importer.services.job_store import ImportJobStore
from hub_importer.services.telemetry_writer import TelemetryWriter

FACTORY = "factory-a"
OTHER_FACTORY = "factory-b"
START = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture()
def engine(tmp_path):
    # File-backed so worker threads share one database
    engine = build_engine(f"sqlite:///{tmp_path / 'imports.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def store(session_factory) -> ImportJobStore:
    return ImportJobStore(session_factory, default_batch_size=1000)


@pytest.fixture()
def writer(session_factory) -> TelemetryWriter:
    return TelemetryWriter(session_factory)


@pytest.fixture()
def processor(store, writer) -> BatchProcessor:
    return BatchProcessor(
        store,
        writer,
        default_batch_size=1000,
        throttle_seconds=0,
        max_runtime_seconds=3600,
        sleep=lambda _: None,
    )


@pytest.fixture()
def make_rows():
    def _make(count: int, asset_id: str = "asset-1", start: datetime = START) -> list[dict]:
        return [
            {
                "ts": start + timedelta(minutes=i),
                "asset_id": asset_id,
                "metric_key": "temperature",
                "metric_value": 20.0 + i % 10,
            }
            for i in range(count)
        ]

    return _make


@pytest.fixture()
def count_rows(session_factory):
    def _count(factory_id: str = FACTORY) -> int:
        with session_scope(session_factory) as session:
            return session.scalar(
                select(func.count(TelemetryLog.id)).where(TelemetryLog.factory_id == factory_id)
            )

    return _count
