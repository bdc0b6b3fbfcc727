"""
Tests for the inference provider integration: provider selection, strict
response validation and per-call deadlines.
"""

import threading

import anthropic
import httpx
import pytest

from donor_import.core.config import settings
from donor_import.integrations.inference import (
    AnthropicInferenceProvider,
    InferenceResponseInvalid,
    InferenceTimeout,
    InferenceUnavailable,
    InferredMapping,
    RateLimitExceeded,
    UnavailableInferenceProvider,
    build_inference_provider,
    call_with_deadline,
    estimate_tokens,
)

VALID_MAPPING = {
    "field_mappings": [
        {
            "source_column": "firstname",
            "target_field": "first_name",
            "confidence": 0.9,
            "data_type": "text",
            "cleaning_operations": [],
        }
    ],
    "data_quality_notes": [],
}


class FakeStructuredLLM:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.messages = None

    def invoke(self, messages):
        self.messages = messages
        if self.error is not None:
            raise self.error
        return self.result


class FakeChatModel:
    def __init__(self, structured):
        self.structured = structured
        self.schema = None

    def with_structured_output(self, schema):
        self.schema = schema
        return self.structured


def _provider(result=None, error=None):
    structured = FakeStructuredLLM(result=result, error=error)
    return AnthropicInferenceProvider(settings, llm=FakeChatModel(structured)), structured


def _request():
    return httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class TestProviderSelection:
    def test_missing_key_disables_inference(self):
        config = settings.model_copy(update={"inference_provider": "anthropic", "anthropic_api_key": ""})
        assert isinstance(build_inference_provider(config), UnavailableInferenceProvider)

    def test_none_and_unknown_providers(self):
        for name in ("none", "", "some-other-vendor"):
            config = settings.model_copy(update={"inference_provider": name})
            assert isinstance(build_inference_provider(config), UnavailableInferenceProvider)

    def test_configured_key_builds_anthropic_provider(self):
        config = settings.model_copy(update={"inference_provider": "anthropic", "anthropic_api_key": "sk-test"})
        assert isinstance(build_inference_provider(config), AnthropicInferenceProvider)

    def test_unavailable_provider_always_raises(self):
        provider = UnavailableInferenceProvider("disabled for tests")
        with pytest.raises(InferenceUnavailable, match="disabled for tests"):
            provider.infer("schema", ["a"], [])
        with pytest.raises(InferenceUnavailable):
            provider.clean_row("schema", {}, [])

    def test_anthropic_provider_without_key_is_unavailable(self):
        config = settings.model_copy(update={"anthropic_api_key": ""})
        with pytest.raises(InferenceUnavailable, match="API key"):
            AnthropicInferenceProvider(config).infer("schema", ["a"], [])


class TestAnthropicProvider:
    def test_dict_response_is_validated(self):
        provider, structured = _provider(result=VALID_MAPPING)
        mapping = provider.infer("schema text", ["firstname"], [{"firstname": "Ada"}])

        assert isinstance(mapping, InferredMapping)
        assert mapping.field_mappings[0].target_field.value == "first_name"
        assert len(structured.messages) == 2
        assert "firstname" in structured.messages[1].content

    def test_model_response_is_returned_as_is(self):
        expected = InferredMapping.model_validate(VALID_MAPPING)
        provider, _ = _provider(result=expected)
        assert provider.infer("schema", ["firstname"], []) is expected

    @pytest.mark.parametrize(
        "payload",
        [
            {"field_mappings": [{**VALID_MAPPING["field_mappings"][0], "target_field": "nickname"}]},
            {**VALID_MAPPING, "extra_key": "not allowed"},
            {"data_quality_notes": []},
        ],
    )
    def test_malformed_responses_are_rejected(self, payload):
        provider, _ = _provider(result=payload)
        with pytest.raises(InferenceResponseInvalid):
            provider.infer("schema", ["firstname"], [])

    def test_unexpected_response_type(self):
        provider, _ = _provider(result="firstname -> first_name")
        with pytest.raises(InferenceResponseInvalid, match="unexpected type"):
            provider.infer("schema", ["firstname"], [])

    def test_sdk_timeout_maps_to_inference_timeout(self):
        provider, _ = _provider(error=anthropic.APITimeoutError(request=_request()))
        with pytest.raises(InferenceTimeout):
            provider.infer("schema", ["firstname"], [])

    def test_sdk_connection_error_maps_to_unavailable(self):
        provider, _ = _provider(error=anthropic.APIConnectionError(request=_request()))
        with pytest.raises(InferenceUnavailable):
            provider.infer("schema", ["firstname"], [])

    def test_sdk_rate_limit_maps_to_rate_limit_exceeded(self):
        response = httpx.Response(429, request=_request())
        provider, _ = _provider(error=anthropic.RateLimitError("slow down", response=response, body=None))
        with pytest.raises(RateLimitExceeded):
            provider.infer("schema", ["firstname"], [])


class TestCallWithDeadline:
    def test_returns_result(self):
        assert call_with_deadline(lambda a, b: a + b, 1.0, 2, 3) == 5

    def test_times_out(self):
        release = threading.Event()
        try:
            with pytest.raises(InferenceTimeout):
                call_with_deadline(release.wait, 0.05, 2)
        finally:
            release.set()

    def test_wraps_unexpected_errors(self):
        def boom():
            raise ValueError("socket closed")

        with pytest.raises(InferenceUnavailable, match="socket closed"):
            call_with_deadline(boom, 1.0)

    def test_inference_errors_pass_through(self):
        def invalid():
            raise InferenceResponseInvalid("bad")

        with pytest.raises(InferenceResponseInvalid):
            call_with_deadline(invalid, 1.0)


def test_estimate_tokens():
    assert estimate_tokens("a" * 400) == 101
    assert estimate_tokens("abcd", ["x"]) > estimate_tokens("abcd")
