"""Publish import progress snapshots to Redis for live dashboards.

The job table stays authoritative; these snapshots only save subscribers
from polling the database while a long import runs.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

from hub_importer.core.config import get_settings
from hub_importer.services.job_helpers import progress_pct
from hub_importer.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "import_jobs:progress:"

_redis_client: Redis | None = None


def _key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


def get_redis_client() -> Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = create_redis_client(
            get_settings().redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _redis_client


def publish_progress(
    job_id: str,
    *,
    status: str,
    rows_done: int,
    rows_total: int,
    message: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Persist the latest snapshot for a job so UIs can subscribe."""
    settings = get_settings()
    if not settings.progress_publish_enabled:
        return
    payload = {
        "job_id": job_id,
        "status": status,
        "rows_done": rows_done,
        "rows_total": rows_total,
        "progress_pct": progress_pct(rows_done, rows_total),
        "message": message,
        "meta": meta or {},
    }
    try:
        get_redis_client().set(
            _key(job_id),
            json.dumps(payload),
            ex=settings.progress_ttl_seconds,
        )
    except RedisError as exc:
        # Redis availability should not break imports.
        logger.debug(f"Skipped progress snapshot for job {job_id}: {exc}")


def fetch_progress(job_id: str) -> dict[str, Any]:
    """Latest snapshot for a job, or an empty dict when none is available."""
    try:
        raw = get_redis_client().get(_key(job_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}
