"""Source adapters: where an import job's rows come from.

Every adapter yields the job's rows in source order, already grouped into
batches of the requested size. Adapters raise ``SourceError`` when they cannot
produce rows; the batch processor turns that into a failed job.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from hub_importer.core.config import get_settings
from hub_importer.core.exceptions import SourceError, ValidationError
from hub_importer.db.models.import_job import SOURCE_PRELOADED, SOURCE_REMOTE_HTTP
from hub_importer.schemas.job import ImportJobStatus
from hub_importer.schemas.telemetry import TelemetryRow
from hub_importer.utils.batching import chunked

logger = logging.getLogger(__name__)

# Source types a poller can run without anything attached to the job record
POLLABLE_SOURCE_TYPES = (SOURCE_REMOTE_HTTP,)


class SourceAdapter(ABC):
    """Supplies a job's rows one batch at a time."""

    source_type: str
    rows_total: int | None = None

    @abstractmethod
    def iter_batches(self, batch_size: int) -> Iterator[list[TelemetryRow]]:
        """Yield lists of at most ``batch_size`` rows until the source is exhausted."""

    def close(self) -> None:
        pass


class PreloadedSource(SourceAdapter):
    """Rows materialized by the caller and handed over with the submission.

    Single use: once iterated, the rows belong to that run. Reprocessing
    needs a fresh submission.
    """

    source_type = SOURCE_PRELOADED

    def __init__(self, rows: Sequence[TelemetryRow | Mapping[str, Any]]):
        try:
            self._rows = [
                row if isinstance(row, TelemetryRow) else TelemetryRow.model_validate(row)
                for row in rows
            ]
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid telemetry row: {exc}") from exc
        self.rows_total = len(self._rows)
        self._consumed = False

    def iter_batches(self, batch_size: int) -> Iterator[list[TelemetryRow]]:
        if self._consumed:
            raise SourceError("Preloaded rows were already consumed; submit them again")
        self._consumed = True
        yield from chunked(self._rows, batch_size)


class RemoteHTTPSource(SourceAdapter):
    """Page through an HTTP endpoint described by the job's ``source_config``.

    Expected config::

        {"url": "https://dx.example.com/history",
         "headers": {"Authorization": "Bearer ..."},
         "params": {"asset": "..."},
         "page_size": 500}

    Pages are requested with ``offset`` and ``limit`` query parameters. A page
    is either a JSON list of rows or an object ``{"rows": [...], "total": n}``.
    An empty or short page ends the stream.
    """

    source_type = SOURCE_REMOTE_HTTP

    def __init__(
        self,
        source_config: Mapping[str, Any] | None,
        client: httpx.Client | None = None,
        *,
        timeout: float | None = None,
    ):
        config = dict(source_config or {})
        url = config.get("url")
        if not url or not isinstance(url, str):
            raise SourceError("remote_http source_config requires a 'url'")
        page_size = config.get("page_size")
        if page_size is not None and (not isinstance(page_size, int) or page_size <= 0):
            raise SourceError("remote_http 'page_size' must be a positive integer")

        self.url = url
        self.headers = dict(config.get("headers") or {})
        self.params = dict(config.get("params") or {})
        self.page_size = page_size
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout or get_settings().remote_http_timeout_seconds
        )

    def iter_batches(self, batch_size: int) -> Iterator[list[TelemetryRow]]:
        yield from chunked(self._iter_rows(self.page_size or batch_size), batch_size)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _iter_rows(self, limit: int) -> Iterator[TelemetryRow]:
        offset = 0
        while True:
            page = self._fetch_page(offset, limit)
            yield from page
            if len(page) < limit:
                return
            offset += len(page)

    def _fetch_page(self, offset: int, limit: int) -> list[TelemetryRow]:
        try:
            response = self._client.get(
                self.url,
                params={**self.params, "offset": offset, "limit": limit},
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise SourceError(f"Remote fetch failed at offset {offset}: {exc}") from exc
        except ValueError as exc:
            raise SourceError(f"Remote source returned invalid JSON at offset {offset}") from exc

        if isinstance(payload, dict):
            total = payload.get("total")
            if isinstance(total, int) and total >= 0:
                self.rows_total = total
            payload = payload.get("rows")
        if not isinstance(payload, list):
            raise SourceError(f"Remote source returned an unexpected page at offset {offset}")

        try:
            rows = [TelemetryRow.model_validate(item) for item in payload]
        except PydanticValidationError as exc:
            raise SourceError(f"Remote source returned malformed rows at offset {offset}: {exc}") from exc
        logger.debug(f"Fetched {len(rows)} rows from {self.url} (offset={offset})")
        return rows


def build_polled_source(job: ImportJobStatus) -> SourceAdapter:
    """Choose the adapter for a job claimed by polling."""
    if job.source_type == SOURCE_REMOTE_HTTP:
        return RemoteHTTPSource(job.source_config)
    if job.source_type == SOURCE_PRELOADED:
        raise SourceError("Preloaded job has no rows attached; submit its rows directly")
    raise SourceError(f"Unknown source_type: {job.source_type!r}")
