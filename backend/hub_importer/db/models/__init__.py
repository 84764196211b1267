"""Database models package."""
from hub_importer.db.models.import_job import ImportJob
from hub_importer.db.models.telemetry_log import TelemetryLog

__all__ = ["ImportJob", "TelemetryLog"]
