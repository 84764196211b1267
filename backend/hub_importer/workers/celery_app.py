"""Celery application for deployments that drive the import engine from Celery workers.

Run with ``--pool=solo`` so each worker process handles one import at a time,
matching the in-process worker loop.
"""

import ssl

from celery import Celery

from hub_importer.core.config import get_settings

settings = get_settings()

broker_url = settings.celery_broker_url or settings.redis_url
backend_url = settings.celery_result_url or settings.redis_url


def _with_ssl_param(url: str) -> str:
    """Celery's Redis backend reads ssl_cert_reqs from the URL during init."""
    if "ssl_cert_reqs" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}ssl_cert_reqs=none"


# Upstash only accepts TLS connections
if ".upstash.io" in broker_url and broker_url.startswith("redis://"):
    broker_url = broker_url.replace("redis://", "rediss://", 1)
if ".upstash.io" in backend_url and backend_url.startswith("redis://"):
    backend_url = backend_url.replace("redis://", "rediss://", 1)
is_ssl = broker_url.startswith("rediss://") or backend_url.startswith("rediss://")

if is_ssl:
    broker_url = _with_ssl_param(broker_url)
    backend_url = _with_ssl_param(backend_url)

celery_app = Celery(
    "hub_importer",
    broker=broker_url,
    backend=backend_url,
    include=["hub_importer.workers.tasks.import_jobs"],
)

celery_app.conf.task_routes = {
    "hub_importer.workers.tasks.poll_import_jobs": {"queue": "imports"},
    "hub_importer.workers.tasks.recover_stale_import_jobs": {"queue": "imports"},
}
celery_app.conf.task_default_queue = "imports"

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,  # Fair task distribution
    # A poll tick can carry one full import
    "task_time_limit": settings.import_max_runtime_seconds + 300,
    "task_soft_time_limit": settings.import_max_runtime_seconds + 60,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "beat_schedule": {
        "poll-import-jobs": {
            "task": "hub_importer.workers.tasks.poll_import_jobs",
            "schedule": settings.import_poll_interval_seconds,
            # Ticks that queue up behind a long import are pointless
            "options": {"expires": settings.import_poll_interval_seconds * 2},
        },
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)
