"""Engine and session factory configuration."""

from collections.abc import Iterator
from contextlib import contextmanager
import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from hub_importer.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _engine_options(database_url: str) -> dict[str, Any]:
    """Pool/connect options per backend.

    The import worker shares this pool with live ingestion, so Postgres gets a
    bounded QueuePool and libpq keepalives for long-running jobs.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_pre_ping": True,  # Test connections before using
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
        "pool_size": 5,
        "max_overflow": 10,
        "connect_args": {
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    }


def build_engine(database_url: str) -> Engine:
    logger.debug(
        f"Creating engine for {make_url(database_url).render_as_string(hide_password=True)}"
    )
    return create_engine(database_url, echo=False, future=True, **_engine_options(database_url))


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False)


engine = build_engine(settings.database_url)

SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """Yield a transactional session; commit on success, roll back on error."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
