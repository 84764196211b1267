"""Track historical import jobs ("Download Longo") and their progress."""

import uuid

from sqlalchemy import BigInteger, Column, Index, Integer, String, Text
from sqlalchemy.types import DateTime

from hub_importer.db.base import Base, JSONType, utcnow

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (STATUS_DONE, STATUS_FAILED, STATUS_CANCELLED)
CANCELLABLE_STATUSES = (STATUS_PENDING, STATUS_RUNNING)
RETRYABLE_STATUSES = (STATUS_FAILED, STATUS_CANCELLED)

SOURCE_PRELOADED = "preloaded"
SOURCE_REMOTE_HTTP = "remote_http"

SOURCE_TYPES = (SOURCE_PRELOADED, SOURCE_REMOTE_HTTP)


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    factory_id = Column(String(36), nullable=False)
    asset_id = Column(String(36))
    requested_by = Column(String(36))
    status = Column(String(32), nullable=False, default=STATUS_PENDING)
    source_type = Column(String(32), nullable=False, default=SOURCE_PRELOADED)
    source_config = Column(JSONType)
    batch_size = Column(Integer, nullable=False, default=1000)
    period_start = Column(DateTime(timezone=True))
    period_end = Column(DateTime(timezone=True))
    rows_total = Column(BigInteger, nullable=False, default=0)
    rows_done = Column(BigInteger, nullable=False, default=0)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_import_jobs_factory_status", "factory_id", "status"),
        Index("ix_import_jobs_status_created", "status", "created_at"),
    )
