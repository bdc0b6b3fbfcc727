"""
Column-to-donor-field mapping.

Two strategies produce a ``MappingResult`` behind ``SchemaMapper.infer``:
an inference provider (AI-assisted) and header pattern matching. Provider
failures of any kind fall back to pattern matching with a data-quality note.
Required-field coverage and overall confidence are always recomputed from
the final mapping set.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import re

from donor_import.core.config import Settings, settings as default_settings
from donor_import.domain.imports.errors import MappingRequestError
from donor_import.domain.imports.target_schema import (
    CleaningOperation,
    DataType,
    TargetField,
    data_type_for,
    default_operations_for,
    describe_target_schema,
)
from donor_import.integrations.inference import (
    InferenceError,
    InferenceProvider,
    InferenceResponseInvalid,
    InferredMapping,
    UnavailableInferenceProvider,
    call_with_deadline,
    estimate_tokens,
)
from donor_import.utils.date import DATE_FORMATS, detect_date_column, infer_date_format
from donor_import.utils.phone import detect_phone_column
from donor_import.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

HEURISTIC_CONFIDENCE = 0.7
INFERRED_FULL_NAME_CONFIDENCE = 0.85
EXPLICIT_CONFIDENCE = 1.0
SAMPLE_VALUES_PER_COLUMN = 3

NAME_PROCESSING_OPTIONS = ("split", "keep_combined", "manual_review")

STRATEGY_INFERENCE = "inference"
STRATEGY_HEURISTIC = "heuristic"
STRATEGY_EXPLICIT = "explicit"

_FULL_NAME_HEADER = re.compile(r"\b(name|full.*name|donor.*name|contact.*name)\b", re.IGNORECASE)


def normalize_column_name(name: str) -> str:
    """
    Normalize a column name for pattern matching.

    Examples:
        "First Name" -> "firstname"
        "e-mail_address" -> "emailaddress"
        "Phone #" -> "phone"
    """
    return re.sub(r'[^a-z0-9]', '', name.lower())


@dataclass
class FieldMapping:
    source_column: str
    target_field: TargetField
    confidence: float
    data_type: DataType
    cleaning_operations: FrozenSet[CleaningOperation] = frozenset()
    sample_values: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_column": self.source_column,
            "target_field": self.target_field.value,
            "confidence": round(self.confidence, 4),
            "data_type": self.data_type.value,
            "cleaning_operations": sorted(op.value for op in self.cleaning_operations),
            "sample_values": list(self.sample_values),
        }


@dataclass
class CleaningStrategy:
    name_processing: str = "split"
    date_format: str = "mixed"

    def to_dict(self) -> Dict[str, str]:
        return {"name_processing": self.name_processing, "date_format": self.date_format}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CleaningStrategy":
        data = data or {}
        name_processing = data.get("name_processing") or "split"
        date_format = data.get("date_format") or "mixed"
        if name_processing not in NAME_PROCESSING_OPTIONS:
            raise MappingRequestError(
                f"Unknown name_processing '{name_processing}'. "
                f"Expected one of: {', '.join(NAME_PROCESSING_OPTIONS)}"
            )
        if date_format not in DATE_FORMATS:
            raise MappingRequestError(
                f"Unknown date_format '{date_format}'. Expected one of: {', '.join(DATE_FORMATS)}"
            )
        return cls(name_processing=name_processing, date_format=date_format)


@dataclass
class MappingResult:
    field_mappings: List[FieldMapping]
    overall_confidence: float
    required_fields_covered: bool
    data_quality_notes: List[str] = field(default_factory=list)
    cleaning_strategy: CleaningStrategy = field(default_factory=CleaningStrategy)
    strategy: str = STRATEGY_HEURISTIC
    unmapped_columns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "overall_confidence": round(self.overall_confidence, 4),
            "required_fields_covered": self.required_fields_covered,
            "data_quality_notes": list(self.data_quality_notes),
            "cleaning_strategy": self.cleaning_strategy.to_dict(),
            "strategy": self.strategy,
            "unmapped_columns": list(self.unmapped_columns),
        }


def clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(1.0, max(0.0, number))


def _sample_values(column: str, sample_rows: Sequence[Dict[str, str]]) -> List[str]:
    values = []
    for row in sample_rows:
        value = (row.get(column) or "").strip()
        if value:
            values.append(value)
        if len(values) >= SAMPLE_VALUES_PER_COLUMN:
            break
    return values


def requirements_met(mappings: Iterable[FieldMapping], min_confidence: float) -> bool:
    """
    True when first and last name are each mapped at or above ``min_confidence``,
    or a combined name column is flagged for splitting.
    """
    covered = set()
    for mapping in mappings:
        if mapping.target_field is TargetField.FULL_NAME:
            if CleaningOperation.SPLIT_NAME in mapping.cleaning_operations:
                return True
            continue
        if mapping.confidence >= min_confidence:
            covered.add(mapping.target_field)
    return TargetField.FIRST_NAME in covered and TargetField.LAST_NAME in covered


# ---------------------------------------------------------------------------
# Header pattern table
# ---------------------------------------------------------------------------

# (target, kind, patterns); evaluated in order, first match wins per header.
# Specific headers (opt-ins, donation dates, student fields) come before the
# generic name/email/phone patterns they would otherwise collide with.
HEADER_PATTERNS: Tuple[Tuple[TargetField, str, Tuple[str, ...]], ...] = (
    (TargetField.EMAIL_OPT_IN, "contains", ("emailoptin", "emailconsent", "emailpermission", "emailsubscribe")),
    (TargetField.PHONE_OPT_IN, "contains", ("phoneoptin", "smsoptin", "textoptin", "phoneconsent", "callpermission")),
    (TargetField.MAIL_OPT_IN, "contains", ("mailoptin", "postaloptin", "mailconsent", "mailpermission")),
    (TargetField.PREFERRED_CONTACT_METHOD, "contains", ("preferredcontact", "contactmethod", "contactpreference")),
    (TargetField.FIRST_DONATION_DATE, "contains", ("firstdonation", "firstgift")),
    (TargetField.LAST_DONATION_DATE, "contains", ("lastdonation", "lastgift", "mostrecentgift", "recentdonation", "latestgift")),
    (TargetField.GRADUATION_YEAR, "contains", ("graduationyear", "gradyear", "classof")),
    (TargetField.ALUMNI_YEAR, "contains", ("alumniyear", "alumyear", "yeargraduated")),
    (TargetField.GRADE_LEVEL, "contains", ("grade",)),
    (TargetField.STUDENT_NAME, "contains", ("student", "child")),
    (TargetField.FIRST_NAME, "contains", ("firstname", "givenname")),
    (TargetField.FIRST_NAME, "equals", ("first", "fname")),
    (TargetField.LAST_NAME, "contains", ("lastname", "surname", "familyname")),
    (TargetField.LAST_NAME, "equals", ("last", "lname")),
    (TargetField.FULL_NAME, "equals", ("name", "fullname", "donorname", "contactname", "parentname", "donor")),
    (TargetField.EMAIL, "equals", ("email", "emailaddress", "primaryemail", "contactemail", "email1", "emailaddr")),
    (TargetField.PHONE, "contains", ("phone", "telephone", "mobile", "cell")),
    (TargetField.ZIP_CODE, "contains", ("zip", "postalcode", "postcode")),
    (TargetField.ADDRESS, "contains", ("address", "street")),
    (TargetField.CITY, "equals", ("city", "town")),
    (TargetField.STATE, "equals", ("state", "province", "region", "st")),
    (TargetField.COUNTRY, "contains", ("country",)),
    (TargetField.DONOR_TYPE, "contains", ("donortype", "relationship", "constituenttype", "affiliation")),
    (TargetField.ENGAGEMENT_LEVEL, "contains", ("engagement",)),
    (TargetField.GIFT_SIZE_TIER, "contains", ("giftsize", "tier", "givinglevel")),
    (TargetField.NOTES, "contains", ("note", "comment")),
)


def match_header(header: str) -> Optional[TargetField]:
    """Return the target field a header name matches, or None."""
    normalized = normalize_column_name(header)
    if not normalized:
        return None
    for target, kind, patterns in HEADER_PATTERNS:
        if kind == "equals" and normalized in patterns:
            return target
        if kind == "contains" and any(pattern in normalized for pattern in patterns):
            return target
    return None


def _guess_date_format(mappings: Sequence[FieldMapping], sample_rows: Sequence[Dict[str, str]]) -> str:
    values: List[str] = []
    for mapping in mappings:
        if mapping.data_type is DataType.DATE:
            values.extend(_sample_values(mapping.source_column, sample_rows))
    return infer_date_format(values)


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------

class SchemaMapper:
    """
    Produce a mapping from spreadsheet columns to donor fields.

    The inference provider is optional; without one (or when it fails) the
    header pattern table is used.
    """

    def __init__(
        self,
        provider: Optional[InferenceProvider] = None,
        rate_limiter: Optional[RateLimiter] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.provider = provider
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(self.config)
        self.min_confidence = self.config.mapping_min_confidence

    # -- public API ---------------------------------------------------------

    def infer(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Dict[str, str]],
        identity: str = "anonymous",
    ) -> MappingResult:
        headers = list(headers)
        if self.provider is None or (self.config.inference_provider or "").lower() == "none":
            result = self.heuristic(headers, sample_rows)
            return self._finalize(result)
        if isinstance(self.provider, UnavailableInferenceProvider):
            result = self.heuristic(headers, sample_rows)
            result.data_quality_notes.insert(
                0, f"AI inference unavailable ({self.provider.reason}) - using header pattern matching"
            )
            return self._finalize(result)

        try:
            response = self._call_provider(headers, sample_rows, identity)
            result = self._from_inference(response, headers, sample_rows)
        except InferenceError as exc:
            reason = str(exc) or exc.__class__.__name__
            logger.warning("AI column mapping unavailable (%s); falling back to header patterns", reason)
            result = self.heuristic(headers, sample_rows)
            result.data_quality_notes.insert(
                0, f"AI inference unavailable ({reason}) - using header pattern matching"
            )
        return self._finalize(result)

    def heuristic(self, headers: Sequence[str], sample_rows: Sequence[Dict[str, str]]) -> MappingResult:
        """Map columns by matching normalized header names against ``HEADER_PATTERNS``."""
        mappings: List[FieldMapping] = []
        claimed: Dict[TargetField, str] = {}
        unmapped: List[str] = []
        notes: List[str] = []
        full_name_candidates: List[str] = []

        for header in headers:
            target = match_header(header)
            if target is None:
                unmapped.append(header)
                continue
            if target is TargetField.FULL_NAME:
                full_name_candidates.append(header)
                continue
            if target in claimed:
                notes.append(
                    f"Column '{header}' also looks like {target.value}; "
                    f"using '{claimed[target]}' instead"
                )
                unmapped.append(header)
                continue
            claimed[target] = header
            mappings.append(self._build_mapping(header, target, HEURISTIC_CONFIDENCE, sample_rows))

        names_complete = TargetField.FIRST_NAME in claimed and TargetField.LAST_NAME in claimed
        if full_name_candidates and not names_complete:
            header = full_name_candidates[0]
            mappings.append(self._build_mapping(header, TargetField.FULL_NAME, HEURISTIC_CONFIDENCE, sample_rows))
            unmapped.extend(full_name_candidates[1:])
            notes.append(f"Column '{header}' will be split into first and last name")
        else:
            unmapped.extend(full_name_candidates)

        for header in unmapped:
            samples = [row.get(header, "") for row in sample_rows]
            if detect_phone_column(samples):
                notes.append(f"Unmapped column '{header}' looks like it contains phone numbers")
            elif detect_date_column(samples):
                notes.append(f"Unmapped column '{header}' looks like it contains dates")

        return MappingResult(
            field_mappings=mappings,
            overall_confidence=0.0,
            required_fields_covered=False,
            data_quality_notes=notes,
            cleaning_strategy=CleaningStrategy(
                name_processing="split",
                date_format=_guess_date_format(mappings, sample_rows),
            ),
            strategy=STRATEGY_HEURISTIC,
            unmapped_columns=[h for h in headers if h in set(unmapped)],
        )

    def from_request(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Dict[str, str]],
        field_mapping: Union[Dict[str, Any], List[Dict[str, Any]]],
        cleaning_strategy: Optional[Dict[str, Any]] = None,
    ) -> MappingResult:
        """
        Build a mapping from an explicit caller-supplied mapping.

        Accepts either ``{"Source Column": "target_field"}`` or a list of
        mapping objects with ``source_column`` and ``target_field`` keys
        (as returned by ``/import/analyze``).

        Raises:
            MappingRequestError: unknown source column or target field
        """
        entries = self._normalize_request_entries(field_mapping)
        known_headers = set(headers)
        mappings: List[FieldMapping] = []
        unmapped = [h for h in headers]
        seen_sources = set()

        for entry in entries:
            source = entry.get("source_column")
            target_value = entry.get("target_field")
            if not source or source not in known_headers:
                raise MappingRequestError(f"Mapped column '{source}' is not in the file header")
            if source in seen_sources:
                raise MappingRequestError(f"Column '{source}' is mapped more than once")
            seen_sources.add(source)
            try:
                target = TargetField(target_value)
            except ValueError as exc:
                raise MappingRequestError(f"Unknown target field '{target_value}' for column '{source}'") from exc
            if target is TargetField.SKIP:
                continue

            try:
                operations = frozenset(CleaningOperation(op) for op in entry.get("cleaning_operations") or ())
            except ValueError as exc:
                raise MappingRequestError(f"Unknown cleaning operation for column '{source}': {exc}") from exc

            mapping = self._build_mapping(
                source,
                target,
                clamp_confidence(entry.get("confidence", EXPLICIT_CONFIDENCE)),
                sample_rows,
                extra_operations=operations,
            )
            mappings.append(mapping)
            unmapped.remove(source)

        result = MappingResult(
            field_mappings=mappings,
            overall_confidence=0.0,
            required_fields_covered=False,
            cleaning_strategy=CleaningStrategy.from_dict(cleaning_strategy),
            strategy=STRATEGY_EXPLICIT,
            unmapped_columns=unmapped,
        )
        return self._finalize(result)

    # -- internals ----------------------------------------------------------

    @staticmethod
    def _normalize_request_entries(field_mapping: Any) -> List[Dict[str, Any]]:
        if isinstance(field_mapping, dict):
            if "field_mappings" in field_mapping:
                return SchemaMapper._normalize_request_entries(field_mapping["field_mappings"])
            entries = []
            for source, target in field_mapping.items():
                if isinstance(target, dict):
                    entries.append({"source_column": source, **target})
                else:
                    entries.append({"source_column": source, "target_field": target})
            return entries
        if isinstance(field_mapping, list):
            if not all(isinstance(entry, dict) for entry in field_mapping):
                raise MappingRequestError("Every field mapping entry must be an object")
            return [dict(entry) for entry in field_mapping]
        raise MappingRequestError("field_mapping must be an object or a list of mapping objects")

    def _build_mapping(
        self,
        source: str,
        target: TargetField,
        confidence: float,
        sample_rows: Sequence[Dict[str, str]],
        extra_operations: FrozenSet[CleaningOperation] = frozenset(),
    ) -> FieldMapping:
        return FieldMapping(
            source_column=source,
            target_field=target,
            confidence=clamp_confidence(confidence),
            data_type=data_type_for(target),
            cleaning_operations=default_operations_for(target) | extra_operations,
            sample_values=_sample_values(source, sample_rows),
        )

    def _call_provider(
        self,
        headers: List[str],
        sample_rows: Sequence[Dict[str, str]],
        identity: str,
    ) -> InferredMapping:
        schema_description = describe_target_schema()
        sample = list(sample_rows)
        self.rate_limiter.check(identity, estimate_tokens(schema_description, headers, sample))
        logger.debug("Inference budget left for %s: %s", identity, self.rate_limiter.remaining(identity))

        response = call_with_deadline(
            self.provider.infer,
            self.config.inference_timeout_seconds,
            schema_description,
            headers,
            sample,
        )
        if not isinstance(response, InferredMapping):
            raise InferenceResponseInvalid(
                f"provider returned {type(response).__name__} instead of a mapping"
            )
        return response

    def _from_inference(
        self,
        response: InferredMapping,
        headers: List[str],
        sample_rows: Sequence[Dict[str, str]],
    ) -> MappingResult:
        known_headers = set(headers)
        mappings: List[FieldMapping] = []
        mapped_sources = set()

        for inferred in response.field_mappings:
            if inferred.source_column not in known_headers:
                raise InferenceResponseInvalid(
                    f"response maps unknown column '{inferred.source_column}'"
                )
            if inferred.source_column in mapped_sources:
                raise InferenceResponseInvalid(
                    f"response maps column '{inferred.source_column}' more than once"
                )
            mapped_sources.add(inferred.source_column)
            if inferred.target_field is TargetField.SKIP:
                continue
            mappings.append(
                self._build_mapping(
                    inferred.source_column,
                    inferred.target_field,
                    inferred.confidence,
                    sample_rows,
                    extra_operations=frozenset(inferred.cleaning_operations),
                )
            )

        notes = list(response.data_quality_notes)
        targets = {m.target_field for m in mappings}
        has_names = TargetField.FIRST_NAME in targets and TargetField.LAST_NAME in targets
        if not has_names and TargetField.FULL_NAME not in targets:
            for header in headers:
                if header in {m.source_column for m in mappings}:
                    continue
                if _FULL_NAME_HEADER.search(header.replace("_", " ")):
                    mappings.append(
                        self._build_mapping(
                            header,
                            TargetField.FULL_NAME,
                            INFERRED_FULL_NAME_CONFIDENCE,
                            sample_rows,
                        )
                    )
                    notes.append(f"Column '{header}' will be split into first and last name")
                    break

        mapped = {m.source_column for m in mappings}
        strategy = response.cleaning_strategy
        return MappingResult(
            field_mappings=mappings,
            overall_confidence=0.0,
            required_fields_covered=False,
            data_quality_notes=notes,
            cleaning_strategy=CleaningStrategy(
                name_processing=strategy.name_processing if strategy else "split",
                date_format=strategy.date_format if strategy else _guess_date_format(mappings, sample_rows),
            ),
            strategy=STRATEGY_INFERENCE,
            unmapped_columns=[h for h in headers if h not in mapped],
        )

    def _finalize(self, result: MappingResult) -> MappingResult:
        for mapping in result.field_mappings:
            mapping.confidence = clamp_confidence(mapping.confidence)

        if result.field_mappings:
            result.overall_confidence = sum(m.confidence for m in result.field_mappings) / len(result.field_mappings)
            result.required_fields_covered = requirements_met(result.field_mappings, self.min_confidence)
        else:
            result.overall_confidence = 0.0
            result.required_fields_covered = False

        if not result.required_fields_covered:
            result.data_quality_notes.append(
                "Required fields first_name and last_name are not covered by the mapping"
            )
        return result
