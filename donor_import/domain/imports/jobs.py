"""
Persistent tracking for donor import jobs.

Status and counter changes are column-targeted UPDATE statements guarded by
the job's current status, so the executing worker and a cancellation request
never overwrite each other and terminal jobs are never mutated.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from donor_import.db.models import ImportJob, ImportRowError, _utcnow
from donor_import.db.session import get_session_local
from donor_import.domain.imports.errors import (
    InvalidTransition,
    JobAlreadyFinished,
    JobNotFound,
    RecordStoreError,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_VALIDATING = "validating"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED})

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_VALIDATING, STATUS_CANCELLED, STATUS_FAILED},
    STATUS_VALIDATING: {STATUS_PROCESSING, STATUS_CANCELLED, STATUS_FAILED},
    STATUS_PROCESSING: {STATUS_COMPLETED, STATUS_CANCELLED, STATUS_FAILED},
}

_TRANSITION_FIELDS = {
    "total_rows",
    "field_mappings",
    "summary",
    "error_message",
    "started_at",
    "completed_at",
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; stored timestamps are always UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _row_to_job(row: ImportJob) -> Dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "file_name": row.file_name,
        "file_size": row.file_size,
        "status": row.status,
        "total_rows": row.total_rows,
        "processed_rows": row.processed_rows,
        "successful_rows": row.successful_rows,
        "error_rows": row.error_rows,
        "skipped_rows": row.skipped_rows,
        "options": dict(row.options or {}),
        "field_mappings": list(row.field_mappings or []),
        "error_summary": list(row.error_summary or []),
        "summary": dict(row.summary or {}),
        "error_message": row.error_message,
        "cancellation_requested": bool(row.cancellation_requested),
        "cancellation_reason": row.cancellation_reason,
        "created_by": row.created_by,
        "created_at": _as_utc(row.created_at),
        "updated_at": _as_utc(row.updated_at),
        "started_at": _as_utc(row.started_at),
        "completed_at": _as_utc(row.completed_at),
    }


def _row_error_to_dict(row: ImportRowError) -> Dict[str, Any]:
    return {
        "row_index": row.row_index,
        "action": row.action,
        "errors": list(row.errors or []),
        "warnings": list(row.warnings or []),
        "raw_data": dict(row.raw_data or {}),
    }


def estimate_remaining_seconds(job: Dict[str, Any], now: Optional[datetime] = None) -> Optional[float]:
    """
    Estimate seconds until completion from the processing rate so far.

    Only available while the job is processing and has made progress.
    """
    if job["status"] != STATUS_PROCESSING or not job.get("started_at"):
        return None
    processed = job["processed_rows"]
    remaining = job["total_rows"] - processed
    if processed <= 0 or remaining <= 0:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed = (now - job["started_at"]).total_seconds()
    if elapsed <= 0:
        return None
    rows_per_second = processed / elapsed
    return round(remaining / rows_per_second, 1)


def progress_percent(job: Dict[str, Any]) -> int:
    total = job["total_rows"]
    if total <= 0:
        return 100 if job["status"] == STATUS_COMPLETED else 0
    return min(100, int(round(job["processed_rows"] * 100 / total)))


class JobStore:
    """Durable, queryable state of import jobs."""

    def __init__(self, session_factory=None, error_summary_limit: int = 100):
        self._session_factory = session_factory
        self.error_summary_limit = error_summary_limit

    def _session(self):
        factory = self._session_factory or get_session_local()
        return factory()

    # -- reads --------------------------------------------------------------

    def get_job(self, job_id: str, created_by: Optional[str] = None) -> Dict[str, Any]:
        """Return a job snapshot; jobs owned by another caller are reported as not found."""
        session = self._session()
        try:
            row = session.get(ImportJob, job_id)
            if row is None or (created_by is not None and row.created_by != created_by):
                raise JobNotFound(job_id)
            return _row_to_job(row)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load import job %s", job_id)
            raise RecordStoreError(f"Could not load import job: {exc}") from exc
        finally:
            session.close()

    def list_jobs(self, created_by: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """List jobs most recent first, optionally restricted to one caller."""
        session = self._session()
        try:
            query = session.query(ImportJob)
            if created_by is not None:
                query = query.filter(ImportJob.created_by == created_by)
            rows = (
                query.order_by(ImportJob.created_at.desc(), ImportJob.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_row_to_job(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception("Failed to list import jobs")
            raise RecordStoreError(f"Could not list import jobs: {exc}") from exc
        finally:
            session.close()

    def is_cancellation_requested(self, job_id: str) -> bool:
        session = self._session()
        try:
            flag = (
                session.query(ImportJob.cancellation_requested)
                .filter(ImportJob.id == job_id)
                .scalar()
            )
            return bool(flag)
        except SQLAlchemyError as exc:
            logger.exception("Failed to read cancellation flag of import job %s", job_id)
            raise RecordStoreError(f"Could not read import job: {exc}") from exc
        finally:
            session.close()

    def list_row_errors(self, job_id: str) -> List[Dict[str, Any]]:
        session = self._session()
        try:
            rows = (
                session.query(ImportRowError)
                .filter(ImportRowError.job_id == job_id)
                .order_by(ImportRowError.row_index)
                .all()
            )
            return [_row_error_to_dict(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception("Failed to load row errors of import job %s", job_id)
            raise RecordStoreError(f"Could not load row errors: {exc}") from exc
        finally:
            session.close()

    # -- writes -------------------------------------------------------------

    def create_job(
        self,
        *,
        name: str,
        file_name: str,
        file_size: int,
        created_by: str,
        options: Optional[Dict[str, Any]] = None,
        field_mappings: Optional[List[Dict[str, Any]]] = None,
        total_rows: int = 0,
    ) -> Dict[str, Any]:
        """Create and persist a new pending import job."""
        session = self._session()
        try:
            row = ImportJob(
                name=name,
                file_name=file_name,
                file_size=file_size,
                status=STATUS_PENDING,
                total_rows=total_rows,
                options=options or {},
                field_mappings=field_mappings or [],
                error_summary=[],
                summary={},
                created_by=created_by,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            job = _row_to_job(row)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to create import job for %s", file_name)
            raise RecordStoreError(f"Could not create import job: {exc}") from exc
        finally:
            session.close()

        logger.info("Created import job %s for %s (%d rows) by %s", job["id"], file_name, total_rows, created_by)
        return job

    def transition(self, job_id: str, new_status: str, **fields: Any) -> Dict[str, Any]:
        """
        Move a job to ``new_status``, optionally setting other columns.

        Raises:
            JobNotFound: unknown job
            InvalidTransition: the move is not allowed from the current status,
                including any move out of a terminal status
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {', '.join(sorted(unknown))} during a status transition")

        session = self._session()
        try:
            current = session.query(ImportJob.status).filter(ImportJob.id == job_id).scalar()
            if current is None:
                raise JobNotFound(job_id)
            if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
                raise InvalidTransition(job_id, current, new_status)

            values = dict(fields)
            values["status"] = new_status
            values["updated_at"] = _utcnow()
            if new_status in TERMINAL_STATUSES:
                values.setdefault("completed_at", _utcnow())

            result = session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id, ImportJob.status == current)
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                latest = session.query(ImportJob.status).filter(ImportJob.id == job_id).scalar()
                raise InvalidTransition(job_id, latest, new_status)
            session.commit()
            return _row_to_job(session.get(ImportJob, job_id))
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to move import job %s to %s", job_id, new_status)
            raise RecordStoreError(f"Could not update import job: {exc}") from exc
        finally:
            session.close()

    def record_batch(
        self,
        job_id: str,
        *,
        processed_rows: int,
        successful_rows: int,
        error_rows: int,
        skipped_rows: int,
        row_errors: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Checkpoint counters after a batch commits, with that batch's row detail.

        Counters are absolute values. They may only grow, and the job must be
        processing; otherwise ``InvalidTransition`` is raised and nothing is written.
        """
        if processed_rows != successful_rows + error_rows + skipped_rows:
            raise ValueError("processed_rows must equal successful + error + skipped rows")

        row_errors = row_errors or []
        session = self._session()
        try:
            row = session.get(ImportJob, job_id)
            if row is None:
                raise JobNotFound(job_id)

            error_summary = list(row.error_summary or [])
            for detail in row_errors:
                if len(error_summary) >= self.error_summary_limit:
                    break
                if detail.get("errors"):
                    error_summary.append(
                        {"row_index": detail["row_index"], "errors": list(detail["errors"])}
                    )

            result = session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job_id,
                    ImportJob.status == STATUS_PROCESSING,
                    ImportJob.processed_rows <= processed_rows,
                    ImportJob.successful_rows <= successful_rows,
                    ImportJob.error_rows <= error_rows,
                    ImportJob.skipped_rows <= skipped_rows,
                )
                .values(
                    processed_rows=processed_rows,
                    successful_rows=successful_rows,
                    error_rows=error_rows,
                    skipped_rows=skipped_rows,
                    error_summary=error_summary,
                    updated_at=_utcnow(),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                raise InvalidTransition(job_id, row.status, "record_batch")

            for detail in row_errors:
                session.add(
                    ImportRowError(
                        job_id=job_id,
                        row_index=detail["row_index"],
                        action=detail.get("action", "skip"),
                        errors=list(detail.get("errors") or []),
                        warnings=list(detail.get("warnings") or []),
                        raw_data=dict(detail.get("raw_data") or {}),
                    )
                )
            session.commit()
            return _row_to_job(session.get(ImportJob, job_id))
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to record batch progress for import job %s", job_id)
            raise RecordStoreError(f"Could not record batch progress: {exc}") from exc
        finally:
            session.close()

    def request_cancellation(
        self,
        job_id: str,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Flag a job for cancellation; the worker observes the flag between batches.

        Raises:
            JobNotFound: unknown job, or owned by another caller
            JobAlreadyFinished: the job is already in a terminal status
        """
        session = self._session()
        try:
            row = session.get(ImportJob, job_id)
            if row is None or (created_by is not None and row.created_by != created_by):
                raise JobNotFound(job_id)

            result = session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id, ImportJob.status.notin_(TERMINAL_STATUSES))
                .values(
                    cancellation_requested=True,
                    cancellation_reason=reason,
                    updated_at=_utcnow(),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                session.expire_all()
                latest = session.get(ImportJob, job_id)
                raise JobAlreadyFinished(job_id, latest.status if latest else row.status)
            session.commit()
            session.expire_all()
            job = _row_to_job(session.get(ImportJob, job_id))
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Failed to request cancellation of import job %s", job_id)
            raise RecordStoreError(f"Could not cancel import job: {exc}") from exc
        finally:
            session.close()

        logger.info("Cancellation requested for import job %s (reason: %s)", job_id, reason or "none given")
        return job
