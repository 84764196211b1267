"""Celery tasks driving the import engine: one poll tick and the recovery sweep."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from celery import signals

from hub_importer.db.session import SessionLocal
from hub_importer.workers.celery_app import celery_app
from hub_importer.workers.import_worker import ImportWorker, build_import_worker

logger = logging.getLogger(__name__)


def _worker() -> ImportWorker:
    return build_import_worker(SessionLocal)


@celery_app.task(name="hub_importer.workers.tasks.poll_import_jobs")
def poll_import_jobs() -> dict[str, Any]:
    """Claim and run at most one pending job."""
    outcome = _worker().poll_once()
    if outcome is None:
        return {"claimed": False}
    return {"claimed": True, **asdict(outcome)}


@celery_app.task(name="hub_importer.workers.tasks.recover_stale_import_jobs")
def recover_stale_import_jobs() -> int:
    return _worker().recover()


@signals.worker_ready.connect
def _recover_on_startup(sender: Any | None = None, **_: Any) -> None:
    """Reset jobs a previous worker left in ``running`` before the first poll."""
    try:
        recovered = recover_stale_import_jobs()
    except Exception as exc:
        logger.error(f"Startup recovery failed: {exc}", exc_info=True)
        return
    logger.info(f"Celery worker ready; recovered {recovered} stale import job(s)")
