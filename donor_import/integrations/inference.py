"""
Inference provider integration used for AI-assisted column mapping and
optional per-row cleaning.

Providers return strictly validated pydantic models; anything the model
produces outside the expected shape is rejected with
``InferenceResponseInvalid`` so callers can fall back to deterministic code.
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, Sequence, Union

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.exceptions import OutputParserException
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from donor_import.core.config import Settings, settings as default_settings
from donor_import.domain.imports.target_schema import CleaningOperation, DataType, TargetField

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class InferenceError(Exception):
    """Base exception for inference provider failures."""
    pass


class InferenceUnavailable(InferenceError):
    """Raised when the provider is not configured or cannot be reached."""
    pass


class InferenceTimeout(InferenceError):
    """Raised when the provider does not answer within the configured deadline."""
    pass


class InferenceResponseInvalid(InferenceError):
    """Raised when the provider's response does not match the expected schema."""
    pass


class RateLimitExceeded(InferenceError):
    """Raised when a caller exceeds the request rate or the per-request token ceiling."""

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None):
        self.message = message
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class InferredFieldMapping(_StrictModel):
    source_column: str = Field(description="Column name exactly as it appears in the file header")
    target_field: TargetField
    confidence: float = Field(description="Confidence between 0.0 and 1.0")
    data_type: DataType
    cleaning_operations: List[CleaningOperation] = Field(default_factory=list)


class InferredCleaningStrategy(_StrictModel):
    name_processing: Literal["split", "keep_combined", "manual_review"] = "split"
    date_format: Literal["US", "EU", "ISO", "mixed"] = "mixed"


class InferredMapping(_StrictModel):
    """Structured mapping suggestion for one spreadsheet."""
    field_mappings: List[InferredFieldMapping]
    data_quality_notes: List[str] = Field(default_factory=list)
    cleaning_strategy: Optional[InferredCleaningStrategy] = None


class InferredRowCleaning(_StrictModel):
    """Structured cleaning result for one row."""
    cleaned_fields: Dict[TargetField, Optional[Union[bool, str]]]
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    confidence: float = 0.8


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------

class InferenceProvider(Protocol):
    def infer(
        self,
        schema_description: str,
        headers: Sequence[str],
        sample_rows: Sequence[Dict[str, str]],
    ) -> InferredMapping:
        ...

    def clean_row(
        self,
        schema_description: str,
        raw_row: Dict[str, str],
        field_mappings: Sequence[Dict[str, Any]],
    ) -> InferredRowCleaning:
        ...


def call_with_deadline(func: Callable[..., Any], timeout_seconds: float, *args: Any) -> Any:
    """
    Run a provider call on a worker thread and give up after ``timeout_seconds``.

    Provider exceptions that are not ``InferenceError`` are wrapped in
    ``InferenceUnavailable`` so callers only handle one family of errors.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(func, *args)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeout as exc:
        future.cancel()
        raise InferenceTimeout(f"no response within {timeout_seconds:g}s") from exc
    except InferenceError:
        raise
    except Exception as exc:
        raise InferenceUnavailable(f"provider error: {exc}") from exc
    finally:
        # Never block the caller on a hung provider call.
        executor.shutdown(wait=False)


def estimate_tokens(*parts: Any) -> int:
    """Rough token estimate for a request payload (about four characters per token)."""
    total_chars = 0
    for part in parts:
        if isinstance(part, str):
            total_chars += len(part)
        else:
            total_chars += len(json.dumps(part, default=str))
    return total_chars // CHARS_PER_TOKEN + 1


MAPPING_SYSTEM_PROMPT = """You are a data mapping expert for a school fundraising donor database.

Map each spreadsheet column to exactly one target donor field, or to "skip" when the column should not be imported.

Rules:
- Use the column names exactly as they appear in the header list.
- first_name and last_name are required. When the file only has a combined name column, map it to full_name with the split_name cleaning operation.
- Give a confidence between 0.0 and 1.0 for every mapping, based on the header and the sample values.
- Choose cleaning operations only from the listed operations.
- Describe data quality problems you notice in the samples (missing values, mixed formats) as short notes.
- Pick a cleaning strategy: name_processing (split, keep_combined, manual_review) and date_format (US, EU, ISO, mixed).
"""

ROW_CLEANING_SYSTEM_PROMPT = """You clean one donor spreadsheet row at a time.

Return the cleaned value for every mapped target field. Split combined names into first_name and last_name,
normalize phone numbers to digits, lowercase emails, convert dates to YYYY-MM-DD and booleans to true/false.
Report non-fatal problems as warnings and problems that make the row unusable as errors.
"""


class AnthropicInferenceProvider:
    """Inference provider backed by Claude through LangChain structured output."""

    def __init__(self, config: Optional[Settings] = None, llm: Any = None):
        self.config = config or default_settings
        self._llm = llm

    def _get_llm(self):
        if self._llm is None:
            api_key = (self.config.anthropic_api_key or "").strip()
            if not api_key:
                raise InferenceUnavailable(
                    "Anthropic API key not configured. Set ANTHROPIC_API_KEY in your environment."
                )
            self._llm = ChatAnthropic(
                model=self.config.inference_model,
                api_key=api_key,
                temperature=0,
                max_tokens=self.config.inference_max_tokens_per_request,
                timeout=self.config.inference_timeout_seconds,
                max_retries=0,
            )
        return self._llm

    def _invoke(self, response_model, system_prompt: str, payload: Dict[str, Any]):
        structured_llm = self._get_llm().with_structured_output(response_model)
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=json.dumps(payload, indent=2, default=str)),
        ]
        try:
            result = structured_llm.invoke(messages)
        except anthropic.APITimeoutError as exc:
            raise InferenceTimeout(f"Inference request timed out: {exc}") from exc
        except anthropic.RateLimitError as exc:
            raise RateLimitExceeded(f"Provider rate limit reached: {exc}") from exc
        except anthropic.APIError as exc:
            raise InferenceUnavailable(f"Inference provider error: {exc}") from exc
        except (ValidationError, OutputParserException) as exc:
            raise InferenceResponseInvalid(f"Inference response failed validation: {exc}") from exc

        if isinstance(result, response_model):
            return result
        if isinstance(result, dict):
            try:
                return response_model.model_validate(result)
            except ValidationError as exc:
                raise InferenceResponseInvalid(f"Inference response failed validation: {exc}") from exc
        raise InferenceResponseInvalid(
            f"Inference response had unexpected type {type(result).__name__}"
        )

    def infer(
        self,
        schema_description: str,
        headers: Sequence[str],
        sample_rows: Sequence[Dict[str, str]],
    ) -> InferredMapping:
        payload = {
            "target_schema": schema_description,
            "headers": list(headers),
            "sample_rows": list(sample_rows),
        }
        return self._invoke(InferredMapping, MAPPING_SYSTEM_PROMPT, payload)

    def clean_row(
        self,
        schema_description: str,
        raw_row: Dict[str, str],
        field_mappings: Sequence[Dict[str, Any]],
    ) -> InferredRowCleaning:
        payload = {
            "target_schema": schema_description,
            "field_mappings": list(field_mappings),
            "row": raw_row,
        }
        return self._invoke(InferredRowCleaning, ROW_CLEANING_SYSTEM_PROMPT, payload)


class UnavailableInferenceProvider:
    """Provider used when inference is disabled; every call fails fast."""

    def __init__(self, reason: str = "AI inference is disabled"):
        self.reason = reason

    def infer(self, schema_description, headers, sample_rows) -> InferredMapping:
        raise InferenceUnavailable(self.reason)

    def clean_row(self, schema_description, raw_row, field_mappings) -> InferredRowCleaning:
        raise InferenceUnavailable(self.reason)


def build_inference_provider(config: Optional[Settings] = None) -> InferenceProvider:
    """Construct the provider selected by ``settings.inference_provider``."""
    config = config or default_settings
    provider_name = (config.inference_provider or "").strip().lower()
    if provider_name == "anthropic":
        if not (config.anthropic_api_key or "").strip():
            logger.info("ANTHROPIC_API_KEY not set; AI-assisted mapping disabled")
            return UnavailableInferenceProvider("Anthropic API key not configured")
        return AnthropicInferenceProvider(config)
    if provider_name in ("", "none"):
        return UnavailableInferenceProvider()
    logger.warning("Unknown inference provider '%s'; AI-assisted mapping disabled", provider_name)
    return UnavailableInferenceProvider(f"Unknown inference provider '{provider_name}'")
