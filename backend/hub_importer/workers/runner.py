"""Foreground entry point: ``hub-import-worker``."""

from __future__ import annotations

import argparse
import logging
import signal
import threading

from hub_importer.core.config import get_settings
from hub_importer.db import models  # noqa: F401  (registers tables on Base.metadata)
from hub_importer.db.base import Base
from hub_importer.db.session import engine
from hub_importer.workers.import_worker import build_import_worker

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the historical telemetry import worker.")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before starting (local development)",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )

    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    worker = build_import_worker(settings=settings)
    shutdown = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"Received {signal.Signals(signum).name}, finishing current job and exiting")
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    worker.start()
    while not shutdown.is_set():
        shutdown.wait(1.0)
    # No timeout: the job in hand runs to a terminal state first
    worker.stop(timeout=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
