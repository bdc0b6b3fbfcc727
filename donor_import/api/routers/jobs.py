"""
Endpoints for tracking, cancelling and reporting on donor import jobs.
"""
import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from donor_import.api.dependencies import get_caller_id, get_job_store
from donor_import.api.schemas.shared import (
    CancelImportRequest,
    CancelImportResponse,
    ImportErrorReportResponse,
    ImportJobInfo,
    ImportJobListResponse,
    ImportJobResponse,
)
from donor_import.core.config import settings
from donor_import.domain.imports.errors import JobAlreadyFinished, JobNotFound, RecordStoreError
from donor_import.domain.imports.jobs import JobStore, estimate_remaining_seconds, progress_percent
from donor_import.domain.imports.record_store import sanitize_value

router = APIRouter(tags=["import-jobs"])

logger = logging.getLogger(__name__)


def build_job_info(job: Dict[str, Any]) -> ImportJobInfo:
    """Add progress, ETA and the first-N error list to a job snapshot."""
    return ImportJobInfo(
        id=job["id"],
        name=job["name"],
        file_name=job["file_name"],
        file_size=job["file_size"],
        status=job["status"],
        total_rows=job["total_rows"],
        processed_rows=job["processed_rows"],
        successful_rows=job["successful_rows"],
        error_rows=job["error_rows"],
        skipped_rows=job["skipped_rows"],
        progress=progress_percent(job),
        estimated_time_remaining_seconds=estimate_remaining_seconds(job),
        options=job["options"],
        errors=job["error_summary"][: settings.import_error_summary_limit],
        summary=job["summary"],
        error_message=job["error_message"],
        cancellation_requested=job["cancellation_requested"],
        cancellation_reason=job["cancellation_reason"],
        created_by=job["created_by"],
        created_at=job["created_at"],
        updated_at=job["updated_at"],
        started_at=job["started_at"],
        completed_at=job["completed_at"],
    )


def _unavailable(action: str, exc: RecordStoreError) -> HTTPException:
    logger.error("Could not %s: %s", action, exc)
    return HTTPException(status_code=503, detail="Import jobs are temporarily unavailable")


def _load_job(job_store: JobStore, import_id: str, caller_id: str) -> Dict[str, Any]:
    try:
        return job_store.get_job(import_id, created_by=caller_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Import job not found")
    except RecordStoreError as exc:
        raise _unavailable(f"load import job {import_id}", exc)


@router.get("/import/jobs", response_model=ImportJobListResponse)
async def list_import_jobs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller_id: str = Depends(get_caller_id),
    job_store: JobStore = Depends(get_job_store),
):
    """List the caller's import jobs, most recent first."""
    try:
        jobs = job_store.list_jobs(created_by=caller_id, limit=limit, offset=offset)
    except RecordStoreError as exc:
        raise _unavailable("list import jobs", exc)
    return ImportJobListResponse(
        success=True,
        jobs=[build_job_info(job) for job in jobs],
        limit=limit,
        offset=offset,
    )


@router.get("/import/{import_id}/status", response_model=ImportJobResponse)
async def get_import_status(
    import_id: str,
    caller_id: str = Depends(get_caller_id),
    job_store: JobStore = Depends(get_job_store),
):
    job = _load_job(job_store, import_id, caller_id)
    return ImportJobResponse(success=True, job=build_job_info(job))


@router.post("/import/{import_id}/cancel", response_model=CancelImportResponse)
async def cancel_import(
    import_id: str,
    request: Optional[CancelImportRequest] = Body(default=None),
    caller_id: str = Depends(get_caller_id),
    job_store: JobStore = Depends(get_job_store),
):
    """
    Request cancellation of a running import.

    The job stops before its next batch; poll the status endpoint to observe
    the transition to ``cancelled``.
    """
    reason = request.reason if request else None
    try:
        job = job_store.request_cancellation(import_id, reason=reason, created_by=caller_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Import job not found")
    except JobAlreadyFinished as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RecordStoreError as exc:
        raise _unavailable(f"cancel import job {import_id}", exc)

    return CancelImportResponse(
        success=True,
        import_id=job["id"],
        status=job["status"],
        message="Cancellation requested; the import stops before its next batch",
    )


def _error_report_csv(rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Row Number", "Error Message", "Original Data"])
    for row in rows:
        messages = row["errors"] or row["warnings"]
        writer.writerow(
            [
                row["row_index"],
                sanitize_value("message", "; ".join(messages)),
                sanitize_value("data", json.dumps(row["raw_data"], ensure_ascii=False)),
            ]
        )
    return buffer.getvalue()


@router.get("/import/{import_id}/errors", response_model=ImportErrorReportResponse)
async def get_import_errors(
    import_id: str,
    format: str = Query("json", pattern="^(json|csv)$"),
    caller_id: str = Depends(get_caller_id),
    job_store: JobStore = Depends(get_job_store),
):
    """
    Per-row errors and warnings for a job, as JSON or as a CSV download.
    """
    job = _load_job(job_store, import_id, caller_id)
    try:
        rows = job_store.list_row_errors(import_id)
    except RecordStoreError as exc:
        raise _unavailable(f"load row errors of import job {import_id}", exc)

    if format == "csv":
        content = _error_report_csv(rows)
        return StreamingResponse(
            iter([content]),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="import-{import_id}-errors.csv"'},
        )

    return ImportErrorReportResponse(success=True, job=build_job_info(job), rows=rows)
