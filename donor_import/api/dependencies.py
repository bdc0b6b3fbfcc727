"""
Shared dependencies and request helpers for the import API.

Every collaborator the routers use is provided through a dependency so tests
can swap it with ``app.dependency_overrides``.
"""
import json
import logging
from typing import Any, Optional, Tuple

from fastapi import Depends, Header, HTTPException, UploadFile

from donor_import.core.config import settings
from donor_import.domain.imports.errors import IngestionError, SizeLimitError
from donor_import.domain.imports.jobs import JobStore
from donor_import.domain.imports.orchestrator import ImportJobRunner
from donor_import.domain.imports.preprocessor import build_row_cleaner
from donor_import.domain.imports.processors.spreadsheet_reader import (
    SpreadsheetData,
    default_max_bytes,
    read_spreadsheet,
)
from donor_import.domain.imports.record_store import SqlRecordStore
from donor_import.domain.imports.schema_mapper import SchemaMapper
from donor_import.integrations.inference import InferenceProvider, build_inference_provider
from donor_import.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

ANONYMOUS_CALLER = "anonymous"

# Shared across requests so per-caller windows survive between calls.
_rate_limiter: Optional[RateLimiter] = None
_inference_provider: Optional[InferenceProvider] = None


def get_caller_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identify the caller from the X-User-Id header."""
    caller = (x_user_id or "").strip()
    return caller or ANONYMOUS_CALLER


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter.from_settings(settings)
    return _rate_limiter


def get_inference_provider() -> InferenceProvider:
    global _inference_provider
    if _inference_provider is None:
        _inference_provider = build_inference_provider(settings)
    return _inference_provider


def reset_dependencies() -> None:
    """Drop cached collaborators (used after settings change)."""
    global _rate_limiter, _inference_provider
    _rate_limiter = None
    _inference_provider = None


def get_schema_mapper(
    provider: InferenceProvider = Depends(get_inference_provider),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> SchemaMapper:
    return SchemaMapper(provider=provider, rate_limiter=rate_limiter, config=settings)


def get_row_cleaner(
    caller_id: str = Depends(get_caller_id),
    provider: InferenceProvider = Depends(get_inference_provider),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    return build_row_cleaner(provider, rate_limiter, caller_id, settings)


def get_job_store() -> JobStore:
    return JobStore(error_summary_limit=settings.import_error_summary_limit)


def get_record_store() -> SqlRecordStore:
    return SqlRecordStore()


def get_import_runner(
    job_store: JobStore = Depends(get_job_store),
    record_store: SqlRecordStore = Depends(get_record_store),
    cleaner=Depends(get_row_cleaner),
) -> ImportJobRunner:
    return ImportJobRunner(job_store, record_store, cleaner, config=settings)


async def read_upload(file: UploadFile, sample_size: Optional[int] = None) -> Tuple[bytes, SpreadsheetData]:
    """
    Read an uploaded file and parse it, translating ingestion errors to HTTP errors.

    Raises:
        HTTPException: 413 when the file is too large, 400 when it cannot be read
    """
    max_bytes = default_max_bytes()
    file_name = file.filename or "upload"
    try:
        if file.size is not None and file.size > max_bytes:
            raise SizeLimitError(file.size, max_bytes)
        content = await file.read()
        spreadsheet = read_spreadsheet(content, max_bytes=max_bytes, sample_size=sample_size)
    except SizeLimitError as exc:
        logger.warning("Rejected upload '%s': %s", file_name, exc.message)
        raise HTTPException(status_code=413, detail=exc.message)
    except IngestionError as exc:
        logger.warning("Rejected upload '%s': %s", file_name, exc)
        raise HTTPException(status_code=400, detail=str(exc))
    return content, spreadsheet


def parse_json_form(value: Optional[str], field_name: str) -> Any:
    """Decode a JSON form field; malformed JSON is a 422."""
    if value is None or not value.strip():
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid JSON in '{field_name}': {exc.msg} (line {exc.lineno}, column {exc.colno})",
        )
