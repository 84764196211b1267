"""Durable job records: creation, claiming, progress and constrained transitions.

The ``import_jobs`` table is the only synchronization point between worker
instances. Every state change below is a conditional ``UPDATE`` whose
``WHERE`` clause names the statuses it may start from, so concurrent writers
either win the row or affect nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session, sessionmaker

from hub_importer.core.config import get_settings
from hub_importer.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    ValidationError,
)
from hub_importer.db.base import as_utc, utcnow
from hub_importer.db.models.import_job import (
    CANCELLABLE_STATUSES,
    RETRYABLE_STATUSES,
    SOURCE_PRELOADED,
    SOURCE_TYPES,
    STATUS_CANCELLED,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    ImportJob,
)
from hub_importer.db.session import SessionLocal, session_scope
from hub_importer.schemas.job import ImportJobCreate, ImportJobStatus
from hub_importer.services.job_helpers import serialize_job

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 200
# Lost compare-and-swap races before giving up on this poll
CLAIM_ATTEMPTS = 3
RECOVERY_MESSAGE = "Worker restarted (auto-recovery)"


class ImportJobStore:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        *,
        default_batch_size: int | None = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self.default_batch_size = (
            default_batch_size or get_settings().import_default_batch_size
        )

    def _session(self):
        return session_scope(self._session_factory)

    def create(self, params: ImportJobCreate | Mapping[str, Any]) -> str:
        """Insert a new job in ``pending`` and return its id."""
        if not isinstance(params, ImportJobCreate):
            try:
                params = ImportJobCreate.model_validate(dict(params))
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid import job parameters: {exc}") from exc

        if not params.factory_id:
            raise ValidationError("factory_id is required")
        source_type = (params.source_type or SOURCE_PRELOADED).strip()
        if source_type not in SOURCE_TYPES:
            raise ValidationError(f"Unsupported source_type: {source_type!r}")

        period_start = as_utc(params.period_start) if params.period_start else None
        period_end = as_utc(params.period_end) if params.period_end else None
        if period_start and period_end and period_end < period_start:
            raise ValidationError("period_end must not be before period_start")

        batch_size = params.batch_size
        if not batch_size or batch_size <= 0:
            batch_size = self.default_batch_size

        with self._session() as session:
            job = ImportJob(
                factory_id=params.factory_id,
                asset_id=params.asset_id,
                requested_by=params.requested_by,
                status=STATUS_PENDING,
                source_type=source_type,
                source_config=params.source_config or {},
                batch_size=batch_size,
                period_start=period_start,
                period_end=period_end,
                rows_total=0,
                rows_done=0,
            )
            session.add(job)
            session.flush()
            job_id = job.id

        logger.info(
            f"Created import job {job_id} (factory={params.factory_id}, type={source_type})"
        )
        return job_id

    def get(self, job_id: str, factory_id: str) -> ImportJobStatus | None:
        """Tenant-scoped read; another factory's job reads as missing."""
        with self._session() as session:
            job = session.scalar(
                select(ImportJob).where(
                    ImportJob.id == job_id, ImportJob.factory_id == factory_id
                )
            )
            return serialize_job(job) if job else None

    def list(self, factory_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[ImportJobStatus]:
        """Most recent jobs first."""
        if not limit or limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        limit = min(limit, MAX_LIST_LIMIT)
        with self._session() as session:
            jobs = session.scalars(
                select(ImportJob)
                .where(ImportJob.factory_id == factory_id)
                .order_by(ImportJob.created_at.desc(), ImportJob.id.desc())
                .limit(limit)
            ).all()
            return [serialize_job(job) for job in jobs]

    def status_of(self, job_id: str, started_at: datetime | None = None) -> str | None:
        """Current status; with ``started_at``, ``None`` once the row holds another claim."""
        query = select(ImportJob.status).where(ImportJob.id == job_id)
        if started_at is not None:
            query = query.where(ImportJob.started_at == as_utc(started_at))
        with self._session() as session:
            return session.scalar(query)

    def claim_one_pending(
        self, source_types: Iterable[str] | None = None
    ) -> ImportJobStatus | None:
        """Atomically move the oldest pending job to ``running`` and return it.

        On Postgres the candidate row is locked with ``FOR UPDATE SKIP LOCKED``
        so racing instances pick different rows. The follow-up update is still
        conditional on ``status = 'pending'`` which keeps the claim exclusive
        on backends that ignore row locks; a loser simply looks again.
        Returns ``None`` when nothing claimable is pending.
        """
        allowed = tuple(source_types) if source_types is not None else None
        if allowed is not None and not allowed:
            return None

        for _ in range(CLAIM_ATTEMPTS):
            with self._session() as session:
                candidate = select(ImportJob.id).where(ImportJob.status == STATUS_PENDING)
                if allowed is not None:
                    candidate = candidate.where(ImportJob.source_type.in_(allowed))
                candidate = (
                    candidate.order_by(ImportJob.created_at)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job_id = session.scalar(candidate)
                if job_id is None:
                    return None

                now = utcnow()
                result = session.execute(
                    update(ImportJob)
                    .where(ImportJob.id == job_id, ImportJob.status == STATUS_PENDING)
                    .values(
                        status=STATUS_RUNNING,
                        started_at=now,
                        finished_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return serialize_job(session.get(ImportJob, job_id))
            logger.debug(f"Lost claim race for job {job_id}, looking again")
        return None

    def claim_submitted(
        self, job_id: str, factory_id: str, rows_total: int
    ) -> ImportJobStatus:
        """Claim one specific pending job whose rows arrive with the submission."""
        with self._session() as session:
            now = utcnow()
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.factory_id == factory_id,
                    ImportJob.status == STATUS_PENDING,
                )
                .values(
                    status=STATUS_RUNNING,
                    started_at=now,
                    finished_at=None,
                    rows_total=rows_total,
                    rows_done=0,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._raise_for_transition(session, job_id, factory_id, "not pending")
            return serialize_job(session.get(ImportJob, job_id))

    def update_progress(
        self,
        job_id: str,
        rows_done: int,
        rows_total: int | None = None,
        *,
        started_at: datetime | None = None,
    ) -> bool:
        """Record progress of a running job; never moves rows_done backwards."""
        values: dict[str, Any] = {"rows_done": rows_done, "updated_at": utcnow()}
        if rows_total is not None:
            values["rows_total"] = rows_total
        return self._conditional_update(
            job_id,
            (STATUS_RUNNING,),
            values,
            started_at,
            ImportJob.rows_done <= rows_done,
        )

    def mark_done(
        self, job_id: str, rows_done: int, *, started_at: datetime | None = None
    ) -> bool:
        """Finish the job; a total still unknown (or short) is raised to rows_done."""
        now = utcnow()
        return self._conditional_update(
            job_id,
            (STATUS_RUNNING, STATUS_DONE),
            {
                "status": STATUS_DONE,
                "rows_done": rows_done,
                "rows_total": case(
                    (ImportJob.rows_total < rows_done, rows_done),
                    else_=ImportJob.rows_total,
                ),
                "finished_at": now,
                "updated_at": now,
            },
            started_at,
        )

    def mark_failed(
        self, job_id: str, message: str, *, started_at: datetime | None = None
    ) -> bool:
        now = utcnow()
        return self._conditional_update(
            job_id,
            (STATUS_RUNNING, STATUS_FAILED),
            {
                "status": STATUS_FAILED,
                "error_message": message,
                "finished_at": now,
                "updated_at": now,
            },
            started_at,
        )

    def mark_cancelled(
        self, job_id: str, rows_done: int, *, started_at: datetime | None = None
    ) -> bool:
        now = utcnow()
        return self._conditional_update(
            job_id,
            (STATUS_RUNNING, STATUS_CANCELLED),
            {
                "status": STATUS_CANCELLED,
                "rows_done": rows_done,
                "finished_at": now,
                "updated_at": now,
            },
            started_at,
        )

    def request_cancel(self, job_id: str, factory_id: str) -> None:
        """Cancel a pending job outright, or flag a running one for the worker to stop."""
        with self._session() as session:
            now = utcnow()
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.factory_id == factory_id,
                    ImportJob.status.in_(CANCELLABLE_STATUSES),
                )
                .values(status=STATUS_CANCELLED, finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._raise_for_transition(session, job_id, factory_id, "not cancellable")
        logger.info(f"Import job {job_id} cancelled on request")

    def retry(self, job_id: str, factory_id: str) -> None:
        """Send a failed or cancelled job back to the queue with its progress reset."""
        with self._session() as session:
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.factory_id == factory_id,
                    ImportJob.status.in_(RETRYABLE_STATUSES),
                )
                .values(
                    status=STATUS_PENDING,
                    error_message=None,
                    rows_done=0,
                    started_at=None,
                    finished_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._raise_for_transition(session, job_id, factory_id, "not retryable")
        logger.info(f"Import job {job_id} reset to pending for retry")

    def recover_stale(self, stale_after: timedelta) -> int:
        """Return abandoned ``running`` jobs to the queue.

        Only jobs whose ``updated_at`` is older than ``stale_after`` are touched;
        a live worker refreshes ``updated_at`` after every batch.
        """
        now = utcnow()
        with self._session() as session:
            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.status == STATUS_RUNNING,
                    ImportJob.updated_at < now - stale_after,
                )
                .values(
                    status=STATUS_PENDING,
                    error_message=RECOVERY_MESSAGE,
                    rows_done=0,
                    started_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            recovered = result.rowcount or 0
        if recovered:
            logger.warning(f"Recovered {recovered} stale running job(s) -> pending")
        return recovered

    def _conditional_update(
        self,
        job_id: str,
        from_statuses: tuple[str, ...],
        values: dict[str, Any],
        started_at: datetime | None = None,
        *criteria: Any,
    ) -> bool:
        """Apply ``values`` only from ``from_statuses``.

        ``started_at`` is the claim's ownership token: when given, the write
        only lands while the row still carries that claim.
        """
        conditions = [ImportJob.id == job_id, ImportJob.status.in_(from_statuses), *criteria]
        if started_at is not None:
            conditions.append(ImportJob.started_at == as_utc(started_at))
        with self._session() as session:
            result = session.execute(
                update(ImportJob)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    @staticmethod
    def _raise_for_transition(
        session: Session, job_id: str, factory_id: str, reason: str
    ) -> None:
        status = session.scalar(
            select(ImportJob.status).where(
                ImportJob.id == job_id, ImportJob.factory_id == factory_id
            )
        )
        if status is None:
            raise JobNotFoundError(job_id)
        raise InvalidTransitionError(job_id, status, reason)
