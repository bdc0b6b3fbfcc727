"""
Dry-run validation of an uploaded file against a field mapping.

Every row is cleaned and checked for duplicates exactly as an import would,
but nothing is written. The result is a pure function of the file, the
mapping, the options and the current donor records.
"""
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from donor_import.domain.imports.duplicates import (
    ACTION_CREATE,
    ACTION_NEEDS_REVIEW,
    ACTION_SKIP,
    ACTION_UPDATE,
)
from donor_import.domain.imports.orchestrator import iter_batches
from donor_import.domain.imports.outcomes import ImportOptions, RowEvaluator, RowOutcome
from donor_import.domain.imports.processors.spreadsheet_reader import SpreadsheetData
from donor_import.domain.imports.record_store import RecordStore
from donor_import.domain.imports.schema_mapper import MappingResult
from donor_import.domain.imports.target_schema import TargetField

logger = logging.getLogger(__name__)

MOST_COMMON_VALUES = 5


def _cleaned_key(target: TargetField) -> str:
    # A combined name column is valid when it produced a first name.
    if target is TargetField.FULL_NAME:
        return TargetField.FIRST_NAME.value
    return target.value


@dataclass
class ColumnStatistics:
    """Running counts for one mapped column; values are tallied, not kept."""
    target_field: str
    total: int = 0
    valid: int = 0
    empty: int = 0
    values: Counter = field(default_factory=Counter)

    def add(self, raw_value: str, valid: bool) -> None:
        self.total += 1
        if not raw_value:
            self.empty += 1
            return
        self.values[raw_value] += 1
        if valid:
            self.valid += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_field": self.target_field,
            "total": self.total,
            "valid": self.valid,
            "empty": self.empty,
            "unique": len(self.values),
            "most_common": [
                {"value": value, "count": count}
                for value, count in self.values.most_common(MOST_COMMON_VALUES)
            ],
        }


def build_field_statistics(statistics: Dict[str, ColumnStatistics]) -> Dict[str, Dict[str, Any]]:
    """Per-column counts (total/valid/empty/unique) and most common values."""
    return {column: stats.to_dict() for column, stats in statistics.items()}


def validate_import(
    spreadsheet: SpreadsheetData,
    mapping: MappingResult,
    options: ImportOptions,
    cleaner: Any,
    record_store: Optional[RecordStore],
    display_limit: int = 100,
    max_workers: int = 1,
    batch_size: int = 100,
) -> Dict[str, Any]:
    """
    Evaluate every row of ``spreadsheet`` without persisting anything.

    Returns the first ``display_limit`` row outcomes, aggregate counts and
    per-field statistics.
    """
    evaluator = RowEvaluator(
        mapping,
        cleaner,
        record_store,
        options,
        record_id_factory=lambda index: f"row-{index}",
        max_workers=max_workers,
    )

    displayed: List[RowOutcome] = []
    counts = {
        "total_rows": 0,
        "valid_rows": 0,
        "error_rows": 0,
        "warning_rows": 0,
        "duplicate_rows": 0,
        "new_records": 0,
        "update_records": 0,
        "skip_rows": 0,
        "review_rows": 0,
    }
    column_statistics: Dict[str, ColumnStatistics] = {
        m.source_column: ColumnStatistics(m.target_field.value) for m in mapping.field_mappings
    }

    for batch in iter_batches(spreadsheet.rows(), max(1, batch_size)):
        for outcome in evaluator.evaluate(batch):
            counts["total_rows"] += 1
            if outcome.has_errors:
                counts["error_rows"] += 1
            else:
                counts["valid_rows"] += 1
                if outcome.action == ACTION_CREATE:
                    counts["new_records"] += 1
                elif outcome.action == ACTION_UPDATE:
                    counts["update_records"] += 1
                elif outcome.action == ACTION_NEEDS_REVIEW:
                    counts["review_rows"] += 1
                elif outcome.action == ACTION_SKIP:
                    counts["skip_rows"] += 1
            if outcome.warnings:
                counts["warning_rows"] += 1
            if outcome.duplicates:
                counts["duplicate_rows"] += 1

            for field_mapping in mapping.field_mappings:
                column = field_mapping.source_column
                raw_value = (outcome.raw_data.get(column) or "").strip()
                valid = outcome.cleaned_fields.get(_cleaned_key(field_mapping.target_field)) is not None
                column_statistics[column].add(raw_value, valid)

            if len(displayed) < display_limit:
                displayed.append(outcome)

    logger.info(
        "Validated %d rows: %d valid, %d errors, %d duplicates",
        counts["total_rows"],
        counts["valid_rows"],
        counts["error_rows"],
        counts["duplicate_rows"],
    )
    return {
        **counts,
        "row_outcomes": [outcome.to_dict() for outcome in displayed],
        "rows_truncated": counts["total_rows"] > len(displayed),
        "field_statistics": build_field_statistics(column_statistics),
    }
