"""Telemetry rows accepted by historical imports."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class TelemetryRow(BaseModel):
    ts: datetime
    asset_id: str | None = None
    metric_key: str
    metric_value: float
    status: str = "OK"
    raw: dict[str, Any] | None = None
    correlation_id: str | None = None
