"""
Donor import endpoints: preview, analyze, validate and process uploaded spreadsheets.
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from starlette.concurrency import run_in_threadpool

from donor_import.api.dependencies import (
    get_caller_id,
    get_import_runner,
    get_job_store,
    get_record_store,
    get_row_cleaner,
    get_schema_mapper,
    parse_json_form,
    read_upload,
)
from donor_import.api.schemas.shared import (
    AnalyzeResponse,
    PreviewResponse,
    ProcessResponse,
    ValidateResponse,
)
from donor_import.core.config import settings
from donor_import.domain.imports.errors import MappingRequestError, RecordStoreError
from donor_import.domain.imports.jobs import JobStore
from donor_import.domain.imports.orchestrator import ImportJobRunner
from donor_import.domain.imports.outcomes import ImportOptions
from donor_import.domain.imports.processors.spreadsheet_reader import SpreadsheetData
from donor_import.domain.imports.record_store import SqlRecordStore
from donor_import.domain.imports.schema_mapper import CleaningStrategy, MappingResult, SchemaMapper
from donor_import.domain.imports.validation import validate_import

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)


def _sample_for_mapping(spreadsheet: SpreadsheetData):
    return spreadsheet.sample[: settings.import_sample_rows]


def _parse_options(raw: Optional[str]) -> ImportOptions:
    data = parse_json_form(raw, "options")
    if data is not None and not isinstance(data, dict):
        raise HTTPException(status_code=422, detail="'options' must be a JSON object")
    try:
        return ImportOptions.from_dict(data)
    except MappingRequestError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


def _parse_cleaning_strategy(raw: Optional[str]) -> Optional[dict]:
    data = parse_json_form(raw, "cleaning_strategy")
    if data is not None and not isinstance(data, dict):
        raise HTTPException(status_code=422, detail="'cleaning_strategy' must be a JSON object")
    return data


async def _resolve_mapping(
    spreadsheet: SpreadsheetData,
    mapper: SchemaMapper,
    caller_id: str,
    field_mapping: Optional[str],
    cleaning_strategy: Optional[str],
) -> MappingResult:
    """Use the caller's explicit mapping, or infer one when none was supplied."""
    mapping_input: Any = parse_json_form(field_mapping, "field_mapping")
    strategy_input = _parse_cleaning_strategy(cleaning_strategy)
    sample = _sample_for_mapping(spreadsheet)
    if mapping_input is None:
        mapping = await run_in_threadpool(mapper.infer, spreadsheet.headers, sample, caller_id)
        if strategy_input:
            try:
                mapping.cleaning_strategy = CleaningStrategy.from_dict(strategy_input)
            except MappingRequestError as exc:
                raise HTTPException(status_code=422, detail=str(exc))
        return mapping
    try:
        return mapper.from_request(spreadsheet.headers, sample, mapping_input, strategy_input)
    except MappingRequestError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/import/preview", response_model=PreviewResponse)
async def preview_import(file: UploadFile = File(...)):
    """
    Parse an uploaded file and return its headers and first rows.

    No mapping is performed.
    """
    content, spreadsheet = await read_upload(file, sample_size=settings.import_preview_rows)
    return PreviewResponse(
        file_name=file.filename or "upload",
        file_size=len(content),
        file_type=spreadsheet.file_type,
        total_rows=spreadsheet.total_rows,
        headers=spreadsheet.headers,
        preview=spreadsheet.sample[: settings.import_preview_rows],
    )


@router.post("/import/analyze", response_model=AnalyzeResponse)
async def analyze_import(
    file: UploadFile = File(...),
    caller_id: str = Depends(get_caller_id),
    mapper: SchemaMapper = Depends(get_schema_mapper),
):
    """
    Parse an uploaded file and suggest a column mapping.

    Inference failures fall back to header pattern matching and are reported
    in ``data_quality_notes``; they never fail the request.
    """
    sample_size = max(settings.import_preview_rows, settings.import_sample_rows)
    content, spreadsheet = await read_upload(file, sample_size=sample_size)
    mapping = await run_in_threadpool(
        mapper.infer, spreadsheet.headers, _sample_for_mapping(spreadsheet), caller_id
    )
    logger.info(
        "Analyzed '%s': %d columns mapped via %s (confidence %.2f)",
        file.filename,
        len(mapping.field_mappings),
        mapping.strategy,
        mapping.overall_confidence,
    )
    result = mapping.to_dict()
    return AnalyzeResponse(
        file_name=file.filename or "upload",
        file_size=len(content),
        file_type=spreadsheet.file_type,
        total_rows=spreadsheet.total_rows,
        headers=spreadsheet.headers,
        preview=spreadsheet.sample[: settings.import_preview_rows],
        field_mappings=result["field_mappings"],
        overall_confidence=result["overall_confidence"],
        required_fields_covered=result["required_fields_covered"],
        data_quality_notes=result["data_quality_notes"],
        cleaning_strategy=result["cleaning_strategy"],
        mapping_strategy=result["strategy"],
        unmapped_columns=result["unmapped_columns"],
    )


@router.post("/import/validate", response_model=ValidateResponse)
async def validate_import_endpoint(
    file: UploadFile = File(...),
    field_mapping: Optional[str] = Form(None),
    options: Optional[str] = Form(None),
    cleaning_strategy: Optional[str] = Form(None),
    caller_id: str = Depends(get_caller_id),
    mapper: SchemaMapper = Depends(get_schema_mapper),
    cleaner=Depends(get_row_cleaner),
    record_store: SqlRecordStore = Depends(get_record_store),
):
    """
    Dry-run an import: clean every row and check for duplicates without writing anything.

    Parameters:
    - file: CSV or .xlsx file
    - field_mapping: JSON mapping; ``{"Column": "target_field"}`` or the
      ``field_mappings`` list from ``/import/analyze``. Inferred when omitted.
    - options: JSON object with skip_duplicates / update_existing
    - cleaning_strategy: JSON object with name_processing / date_format
    """
    _, spreadsheet = await read_upload(file)
    import_options = _parse_options(options)
    mapping = await _resolve_mapping(spreadsheet, mapper, caller_id, field_mapping, cleaning_strategy)

    try:
        report = await run_in_threadpool(
            validate_import,
            spreadsheet,
            mapping,
            import_options,
            cleaner,
            record_store,
            settings.import_validate_display_limit,
            settings.import_max_workers,
            settings.import_batch_size,
        )
    except RecordStoreError as exc:
        logger.error("Validation of '%s' failed: %s", file.filename, exc)
        raise HTTPException(status_code=503, detail="Donor records are temporarily unavailable")

    return ValidateResponse(
        file_name=file.filename or "upload",
        required_fields_covered=mapping.required_fields_covered,
        data_quality_notes=mapping.data_quality_notes,
        **report,
    )


@router.post("/import/process", response_model=ProcessResponse)
async def process_import(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    field_mapping: Optional[str] = Form(None),
    options: Optional[str] = Form(None),
    cleaning_strategy: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    caller_id: str = Depends(get_caller_id),
    mapper: SchemaMapper = Depends(get_schema_mapper),
    job_store: JobStore = Depends(get_job_store),
    runner: ImportJobRunner = Depends(get_import_runner),
):
    """
    Start an import job in the background and return its id.

    Poll ``/import/{import_id}/status`` for progress.
    """
    content, spreadsheet = await read_upload(file)
    import_options = _parse_options(options)
    mapping = await _resolve_mapping(spreadsheet, mapper, caller_id, field_mapping, cleaning_strategy)

    file_name = file.filename or "upload"
    stored_options = import_options.to_dict()
    stored_options["cleaning_strategy"] = mapping.cleaning_strategy.to_dict()
    try:
        job = job_store.create_job(
            name=name or f"Import of {file_name}",
            file_name=file_name,
            file_size=len(content),
            created_by=caller_id,
            options=stored_options,
            field_mappings=[m.to_dict() for m in mapping.field_mappings],
            total_rows=spreadsheet.total_rows,
        )
    except RecordStoreError as exc:
        logger.error("Could not create import job for '%s': %s", file_name, exc)
        raise HTTPException(status_code=503, detail="Import jobs are temporarily unavailable")

    background_tasks.add_task(runner.run, job["id"], spreadsheet, mapping, import_options)
    return ProcessResponse(
        import_id=job["id"],
        status=job["status"],
        total_rows=job["total_rows"],
        message="Import started",
    )
