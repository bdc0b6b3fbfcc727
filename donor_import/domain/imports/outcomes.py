"""
Per-row evaluation shared by validation and import processing: clean each
row, look for duplicates and decide what the import does with it.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from donor_import.domain.imports.duplicates import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    DuplicateMatch,
    InFilePool,
    find_matches,
    resolve_action,
    update_target,
)
from donor_import.domain.imports.errors import MappingRequestError
from donor_import.domain.imports.preprocessor import CleaningResult
from donor_import.domain.imports.record_store import RecordStore
from donor_import.domain.imports.schema_mapper import MappingResult

logger = logging.getLogger(__name__)

IndexedRow = Tuple[int, Dict[str, str]]


@dataclass
class ImportOptions:
    skip_duplicates: bool = False
    update_existing: bool = False
    send_welcome_notification: bool = False

    _ALIASES = {
        "skipDuplicates": "skip_duplicates",
        "updateExisting": "update_existing",
        "sendWelcomeNotification": "send_welcome_notification",
        "sendWelcomeEmail": "send_welcome_notification",
    }

    _TRUE_STRINGS = ("true", "1", "yes")
    _FALSE_STRINGS = ("false", "0", "no", "")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ImportOptions":
        """
        Build options from snake_case or camelCase keys; unknown keys are ignored.

        Flags must be JSON booleans or one of the strings "true"/"false"
        (also "yes"/"no", "1"/"0"); anything else raises MappingRequestError.
        """
        values: Dict[str, bool] = {}
        for key, value in (data or {}).items():
            name = cls._ALIASES.get(key, key)
            if name in ("skip_duplicates", "update_existing", "send_welcome_notification"):
                values[name] = cls._parse_flag(key, value)
        return cls(**values)

    @classmethod
    def _parse_flag(cls, key: str, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text in cls._TRUE_STRINGS:
                return True
            if text in cls._FALSE_STRINGS:
                return False
        raise MappingRequestError(f"Option '{key}' must be true or false, got {value!r}")

    def to_dict(self) -> Dict[str, bool]:
        return {
            "skip_duplicates": self.skip_duplicates,
            "update_existing": self.update_existing,
            "send_welcome_notification": self.send_welcome_notification,
        }


@dataclass
class RowOutcome:
    row_index: int
    raw_data: Dict[str, str]
    cleaned_fields: Dict[str, Any]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duplicates: List[DuplicateMatch] = field(default_factory=list)
    action: str = ACTION_CREATE
    confidence: float = 0.0
    record_id: Optional[str] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_index": self.row_index,
            "raw_data": dict(self.raw_data),
            "cleaned_data": dict(self.cleaned_fields),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duplicates": [match.to_dict() for match in self.duplicates],
            "action": self.action,
            "confidence": self.confidence,
            "record_id": self.record_id,
        }


class RowEvaluator:
    """
    Evaluate rows in order. Cleaning runs on a bounded worker pool; duplicate
    detection runs sequentially so rows created earlier in the file are
    visible to later rows.

    ``record_id_factory`` names the record a ``create`` row will produce, so
    later in-file duplicates can refer to it.
    """

    def __init__(
        self,
        mapping: MappingResult,
        cleaner: Any,
        record_store: Optional[RecordStore],
        options: ImportOptions,
        record_id_factory: Callable[[int], str],
        max_workers: int = 1,
    ):
        self.mapping = mapping
        self.cleaner = cleaner
        self.record_store = record_store
        self.options = options
        self.record_id_factory = record_id_factory
        self.max_workers = max(1, max_workers)
        self.pool = InFilePool()

    def _clean(self, raw_row: Dict[str, str]) -> CleaningResult:
        return self.cleaner.clean(raw_row, self.mapping.field_mappings, self.mapping.cleaning_strategy)

    def clean_rows(self, rows: Sequence[IndexedRow]) -> List[CleaningResult]:
        raw_rows = [raw for _, raw in rows]
        if self.max_workers == 1 or len(raw_rows) < 2:
            return [self._clean(raw) for raw in raw_rows]
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(self._clean, raw_rows))

    def evaluate(self, rows: Sequence[IndexedRow]) -> List[RowOutcome]:
        cleaned = self.clean_rows(rows)
        return [self._resolve(index, raw, result) for (index, raw), result in zip(rows, cleaned)]

    def _resolve(self, row_index: int, raw_row: Dict[str, str], result: CleaningResult) -> RowOutcome:
        outcome = RowOutcome(
            row_index=row_index,
            raw_data=dict(raw_row),
            cleaned_fields=result.cleaned_fields,
            errors=list(result.errors),
            warnings=list(result.warnings),
            confidence=result.confidence,
        )
        if outcome.has_errors:
            # Rows with fatal errors are never created or updated.
            outcome.action = ACTION_SKIP
            return outcome

        fields = result.cleaned_fields
        candidates = []
        if self.record_store is not None:
            candidates.extend(
                self.record_store.find_candidates(
                    fields.get("email"), fields.get("first_name"), fields.get("last_name")
                )
            )
        candidates.extend(self.pool.candidates_for(fields))

        outcome.duplicates = find_matches(fields, candidates)
        outcome.action = resolve_action(
            outcome.duplicates,
            skip_duplicates=self.options.skip_duplicates,
            update_existing=self.options.update_existing,
        )
        if outcome.action == ACTION_CREATE:
            outcome.record_id = self.record_id_factory(row_index)
            self.pool.add(outcome.record_id, fields)
        elif outcome.action == ACTION_UPDATE:
            outcome.record_id = update_target(outcome.duplicates)
        return outcome
