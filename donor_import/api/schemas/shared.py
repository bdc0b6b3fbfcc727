from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class FieldMappingInfo(BaseModel):
    """One source column mapped onto a donor field."""
    source_column: str
    target_field: str
    confidence: float = Field(ge=0.0, le=1.0)
    data_type: str
    cleaning_operations: List[str] = Field(default_factory=list)
    sample_values: List[str] = Field(default_factory=list)


class CleaningStrategyInfo(BaseModel):
    name_processing: str = "split"
    date_format: str = "mixed"


class PreviewResponse(BaseModel):
    success: bool = True
    file_name: str
    file_size: int
    file_type: str
    total_rows: int
    headers: List[str]
    preview: List[Dict[str, str]]


class AnalyzeResponse(PreviewResponse):
    field_mappings: List[FieldMappingInfo]
    overall_confidence: float = Field(ge=0.0, le=1.0)
    required_fields_covered: bool
    data_quality_notes: List[str] = Field(default_factory=list)
    cleaning_strategy: CleaningStrategyInfo = Field(default_factory=CleaningStrategyInfo)
    mapping_strategy: str
    unmapped_columns: List[str] = Field(default_factory=list)


class DuplicateMatchInfo(BaseModel):
    matched_record_id: str
    tier: str
    match_reasons: List[str] = Field(default_factory=list)


class RowOutcomeInfo(BaseModel):
    """Result of evaluating one spreadsheet row (1-based ``row_index``)."""
    row_index: int
    raw_data: Dict[str, str]
    cleaned_data: Dict[str, Any]
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duplicates: List[DuplicateMatchInfo] = Field(default_factory=list)
    action: str
    confidence: float
    record_id: Optional[str] = None


class MostCommonValue(BaseModel):
    value: str
    count: int


class FieldStatistics(BaseModel):
    target_field: str
    total: int
    valid: int
    empty: int
    unique: int
    most_common: List[MostCommonValue] = Field(default_factory=list)


class ValidateResponse(BaseModel):
    success: bool = True
    file_name: str
    total_rows: int
    valid_rows: int
    error_rows: int
    warning_rows: int
    duplicate_rows: int
    new_records: int
    update_records: int
    skip_rows: int
    review_rows: int
    row_outcomes: List[RowOutcomeInfo]
    rows_truncated: bool = False
    field_statistics: Dict[str, FieldStatistics] = Field(default_factory=dict)
    required_fields_covered: bool
    data_quality_notes: List[str] = Field(default_factory=list)


class ProcessResponse(BaseModel):
    success: bool = True
    import_id: str
    status: str
    total_rows: int
    message: str


class RowErrorInfo(BaseModel):
    row_index: int
    errors: List[str] = Field(default_factory=list)


class ImportJobInfo(BaseModel):
    """Snapshot of a donor import job."""
    id: str
    name: str
    file_name: str
    file_size: int
    status: str
    total_rows: int
    processed_rows: int
    successful_rows: int
    error_rows: int
    skipped_rows: int
    progress: int = 0
    estimated_time_remaining_seconds: Optional[float] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    errors: List[RowErrorInfo] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    cancellation_requested: bool = False
    cancellation_reason: Optional[str] = None
    created_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    limit: int
    offset: int


class CancelImportRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class CancelImportResponse(BaseModel):
    success: bool
    import_id: str
    status: str
    message: str


class RowDetailInfo(BaseModel):
    row_index: int
    action: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    raw_data: Dict[str, Any] = Field(default_factory=dict)


class ImportErrorReportResponse(BaseModel):
    success: bool
    job: ImportJobInfo
    rows: List[RowDetailInfo]
