"""SQLAlchemy model for telemetry samples written by imports and live ingest."""

from sqlalchemy import BigInteger, Column, Float, Index, Integer, String
from sqlalchemy.types import DateTime

from hub_importer.db.base import Base, JSONType

# SQLite only autoincrements INTEGER primary keys
IdType = BigInteger().with_variant(Integer(), "sqlite")


class TelemetryLog(Base):
    __tablename__ = "telemetry_log"

    id = Column(IdType, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), nullable=False)
    factory_id = Column(String(36), nullable=False)
    asset_id = Column(String(36))
    metric_key = Column(String(128), nullable=False)
    metric_value = Column(Float, nullable=False)
    status = Column(String(32), nullable=False, default="OK")
    raw = Column(JSONType)
    correlation_id = Column(String(64))

    # Serves the per-batch range check done by historical imports
    __table_args__ = (Index("ix_telemetry_log_import_range", "asset_id", "ts"),)
