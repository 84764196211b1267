"""Import job payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ImportJobCreate(BaseModel):
    """Parameters accepted when a new import job is recorded."""

    factory_id: str | None = None
    asset_id: str | None = None
    requested_by: str | None = None
    source_type: str | None = Field(None, description="preloaded|remote_http")
    source_config: dict[str, Any] | None = None
    batch_size: int | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class ImportJobStatus(BaseModel):
    id: str
    factory_id: str
    asset_id: str | None = None
    status: str = Field(..., description="pending|running|done|failed|cancelled")
    source_type: str
    source_config: dict[str, Any] = Field(default_factory=dict)
    batch_size: int
    rows_total: int = 0
    rows_done: int = 0
    progress_pct: float = Field(0.0, description="0-100, 0 while the total is unknown")
    error_message: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
