from typing import Any, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
import logging

from donor_import.core.config import Settings, settings as default_settings
from donor_import.domain.imports.schema_mapper import CleaningStrategy, FieldMapping
from donor_import.domain.imports.target_schema import (
    CleaningOperation,
    FIELD_DEFINITIONS,
    TargetField,
    default_operations_for,
    describe_target_schema,
)
from donor_import.integrations.inference import (
    InferenceError,
    InferenceProvider,
    InferenceResponseInvalid,
    InferredRowCleaning,
    call_with_deadline,
    estimate_tokens,
)
from donor_import.utils.date import parse_flexible_date
from donor_import.utils.phone import normalize_phone
from donor_import.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

BASELINE_CONFIDENCE = 0.8
WARNING_PENALTY = 0.1
WARNING_FLOOR = 0.4
ERROR_PENALTY = 0.3
ERROR_FLOOR = 0.2

MISSING_NAME_ERROR = "Missing required fields: first_name and last_name"
SINGLE_PART_NAME_WARNING = "Name appears to have only one part"

BOOLEAN_TRUE = {"yes", "y", "true", "t", "1", "x", "optin", "optedin", "subscribed", "on"}
BOOLEAN_FALSE = {"no", "n", "false", "f", "0", "optout", "optedout", "unsubscribed", "off"}

# Applied in this order when a mapping carries several operations.
_OPERATION_PRIORITY = (
    CleaningOperation.NORMALIZE_EMAIL,
    CleaningOperation.NORMALIZE_PHONE,
    CleaningOperation.PARSE_DATE,
    CleaningOperation.COERCE_BOOLEAN,
    CleaningOperation.NORMALIZE_ENUM,
)


@dataclass
class CleaningResult:
    """Outcome of cleaning one raw row."""
    cleaned_fields: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    confidence: float = BASELINE_CONFIDENCE

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cleaned_fields": dict(self.cleaned_fields),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "confidence": round(self.confidence, 4),
        }


def score_confidence(warning_count: int, error_count: int, baseline: float = BASELINE_CONFIDENCE) -> float:
    """
    Degrade the baseline confidence by the number of warnings and errors.

    Each warning costs 0.1 (not below 0.4); any error costs a further 0.3
    (not below 0.2).
    """
    confidence = baseline
    if warning_count:
        confidence = max(WARNING_FLOOR, confidence - WARNING_PENALTY * warning_count)
    if error_count:
        confidence = max(ERROR_FLOOR, confidence - ERROR_PENALTY)
    return round(confidence, 4)


def split_full_name(value: str) -> Tuple[str, str]:
    """First token is the first name; the remaining tokens joined by one space are the last name."""
    parts = value.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def normalize_email(value: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (email, error). Invalid emails are returned as None with an error message."""
    email = value.strip().lower()
    local, _, domain = email.partition("@")
    valid = (
        email.count("@") == 1
        and bool(local)
        and "." in domain
        and not domain.startswith(".")
        and not domain.endswith(".")
        and " " not in email
    )
    if not valid:
        return None, f"Invalid email format: {value.strip()}"
    return email, None


def coerce_boolean(value: str) -> Optional[bool]:
    token = value.strip().lower().replace("-", "").replace("_", "").replace(" ", "")
    if token in BOOLEAN_TRUE:
        return True
    if token in BOOLEAN_FALSE:
        return False
    return None


def normalize_enum(value: str, allowed_values: Sequence[str]) -> Optional[str]:
    token = "_".join(value.strip().lower().replace("-", " ").split())
    if token in allowed_values:
        return token
    return None


class RowCleaner:
    """
    Deterministic row cleaning: a pure function of the raw row, the field
    mappings and the cleaning strategy.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def clean(
        self,
        raw_row: Dict[str, str],
        field_mappings: Sequence[FieldMapping],
        cleaning_strategy: Optional[CleaningStrategy] = None,
    ) -> CleaningResult:
        strategy = cleaning_strategy or CleaningStrategy()
        cleaned: Dict[str, Any] = {}
        warnings: List[str] = []
        errors: List[str] = []
        split_first = split_last = ""

        for mapping in field_mappings:
            target = mapping.target_field
            if target is TargetField.SKIP:
                continue
            raw_value = raw_row.get(mapping.source_column)
            text = "" if raw_value is None else str(raw_value).strip()
            if not text:
                continue

            if target is TargetField.FULL_NAME:
                if split_first or split_last:
                    continue
                split_first, split_last = self._process_full_name(
                    text, mapping, strategy, warnings
                )
                continue

            if target.value in cleaned:
                # Several columns mapped to one field: the first non-empty value wins.
                continue

            operations = set(mapping.cleaning_operations) | set(default_operations_for(target))
            value = self._apply_operations(target, text, operations, strategy, warnings, errors)
            if value is not None:
                cleaned[target.value] = value

        # Explicit first/last name columns take precedence over split values.
        if split_first and not cleaned.get(TargetField.FIRST_NAME.value):
            cleaned[TargetField.FIRST_NAME.value] = split_first
        if split_last and not cleaned.get(TargetField.LAST_NAME.value):
            cleaned[TargetField.LAST_NAME.value] = split_last

        if not cleaned.get(TargetField.FIRST_NAME.value) and not cleaned.get(TargetField.LAST_NAME.value):
            errors.append(MISSING_NAME_ERROR)

        return CleaningResult(
            cleaned_fields=cleaned,
            warnings=warnings,
            errors=errors,
            confidence=score_confidence(len(warnings), len(errors)),
        )

    @staticmethod
    def _process_full_name(
        text: str,
        mapping: FieldMapping,
        strategy: CleaningStrategy,
        warnings: List[str],
    ) -> Tuple[str, str]:
        if strategy.name_processing == "keep_combined" or CleaningOperation.SPLIT_NAME not in mapping.cleaning_operations:
            warnings.append(f"Combined name '{text}' kept as first name")
            return " ".join(text.split()), ""

        first, last = split_full_name(text)
        if not last:
            warnings.append(SINGLE_PART_NAME_WARNING)
        if strategy.name_processing == "manual_review":
            warnings.append(f"Name split of '{text}' needs manual review")
        return first, last

    def _apply_operations(
        self,
        target: TargetField,
        text: str,
        operations: set,
        strategy: CleaningStrategy,
        warnings: List[str],
        errors: List[str],
    ) -> Any:
        operation = next((op for op in _OPERATION_PRIORITY if op in operations), None)

        if operation is CleaningOperation.NORMALIZE_EMAIL:
            email, error = normalize_email(text)
            if error:
                errors.append(error)
            return email

        if operation is CleaningOperation.NORMALIZE_PHONE:
            digits, warning = normalize_phone(text)
            if warning:
                warnings.append(warning)
            return digits

        if operation is CleaningOperation.PARSE_DATE:
            parsed = parse_flexible_date(text, date_format=strategy.date_format, log_context=target.value)
            if parsed is None:
                warnings.append(f"Could not parse {target.value} '{text}'")
            return parsed

        if operation is CleaningOperation.COERCE_BOOLEAN:
            flag = coerce_boolean(text)
            if flag is None:
                warnings.append(f"Unrecognized {target.value} value '{text}'")
            return flag

        if operation is CleaningOperation.NORMALIZE_ENUM:
            definition = FIELD_DEFINITIONS.get(target)
            allowed = definition.allowed_values if definition else ()
            normalized = normalize_enum(text, allowed)
            if normalized is None:
                warnings.append(
                    f"Unknown {target.value} '{text}' (expected one of: {', '.join(allowed)})"
                )
            return normalized

        return " ".join(text.split()) if target is not TargetField.NOTES else text


class AssistedRowCleaner:
    """
    Per-row cleaning through the inference provider, layered on ``RowCleaner``.

    The provider's output is re-cleaned with the deterministic rules so email,
    phone and required-field checks always hold. Any inference error falls
    back to the deterministic cleaner for that row.
    """

    def __init__(
        self,
        provider: InferenceProvider,
        fallback: Optional[RowCleaner] = None,
        rate_limiter: Optional[RateLimiter] = None,
        identity: str = "anonymous",
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.provider = provider
        self.fallback = fallback or RowCleaner(self.config)
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(self.config)
        self.identity = identity

    def clean(
        self,
        raw_row: Dict[str, str],
        field_mappings: Sequence[FieldMapping],
        cleaning_strategy: Optional[CleaningStrategy] = None,
    ) -> CleaningResult:
        try:
            response = self._call_provider(raw_row, field_mappings)
        except InferenceError as exc:
            logger.debug("AI row cleaning unavailable (%s); using deterministic rules", exc)
            return self.fallback.clean(raw_row, field_mappings, cleaning_strategy)

        reclean_row: Dict[str, str] = {}
        reclean_mappings: List[FieldMapping] = []
        for target, value in response.cleaned_fields.items():
            if target is TargetField.SKIP or value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            reclean_row[target.value] = value
            reclean_mappings.append(
                FieldMapping(
                    source_column=target.value,
                    target_field=target,
                    confidence=1.0,
                    data_type=FIELD_DEFINITIONS[target].data_type,
                    cleaning_operations=default_operations_for(target),
                )
            )

        result = self.fallback.clean(reclean_row, reclean_mappings, cleaning_strategy)
        warnings = list(response.warnings) + [w for w in result.warnings if w not in response.warnings]
        errors = list(response.errors) + [e for e in result.errors if e not in response.errors]
        return CleaningResult(
            cleaned_fields=result.cleaned_fields,
            warnings=warnings,
            errors=errors,
            confidence=score_confidence(len(warnings), len(errors)),
        )

    def _call_provider(
        self,
        raw_row: Dict[str, str],
        field_mappings: Sequence[FieldMapping],
    ) -> InferredRowCleaning:
        schema_description = describe_target_schema()
        mapping_dicts = [m.to_dict() for m in field_mappings]
        self.rate_limiter.check(self.identity, estimate_tokens(schema_description, raw_row, mapping_dicts))
        response = call_with_deadline(
            self.provider.clean_row,
            self.config.inference_timeout_seconds,
            schema_description,
            raw_row,
            mapping_dicts,
        )
        if not isinstance(response, InferredRowCleaning):
            raise InferenceResponseInvalid(
                f"provider returned {type(response).__name__} instead of a cleaned row"
            )
        return response


def build_row_cleaner(
    provider: Optional[InferenceProvider] = None,
    rate_limiter: Optional[RateLimiter] = None,
    identity: str = "anonymous",
    config: Optional[Settings] = None,
):
    """Return the AI-assisted cleaner when enabled and a provider exists, else the deterministic one."""
    config = config or default_settings
    deterministic = RowCleaner(config)
    if config.ai_row_cleaning_enabled and provider is not None:
        return AssistedRowCleaner(provider, deterministic, rate_limiter, identity, config)
    return deterministic
