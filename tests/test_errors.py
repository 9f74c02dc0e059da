"""Tests for provider error normalization."""

import json

import httpx
import pytest

from llm_gateway.gateway.errors import (
    AuthFailed,
    ErrorCategory,
    InvalidParameters,
    ModelUnavailable,
    RateLimited,
    ServerError,
    TimeoutFirstToken,
    normalize_http_error,
    normalize_stream_error,
    normalize_transport_error,
)


def _body(message, code=None, param=None):
    error = {"message": message}
    if code:
        error["code"] = code
    if param:
        error["param"] = param
    return json.dumps({"error": error})


class TestNormalizeHttpError:
    """Status and body mapping to the closed taxonomy."""

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth(self, status):
        error = normalize_http_error(status, _body("bad key"), provider="openai")
        assert isinstance(error, AuthFailed)
        assert error.category == ErrorCategory.AUTH_FAILED
        assert error.provider == "openai"
        assert error.status == status
        assert not error.retryable

    def test_rate_limited_reads_retry_after_header(self):
        error = normalize_http_error(429, _body("slow down"), {"Retry-After": "3"})
        assert isinstance(error, RateLimited)
        assert error.retry_after == 3.0
        assert error.retryable

    def test_rate_limited_reads_retry_hint_from_body(self):
        error = normalize_http_error(429, _body("Please try again in 250ms"))
        assert error.retry_after == pytest.approx(0.25)

    def test_not_found_is_model_unavailable(self):
        error = normalize_http_error(404, _body("nope"))
        assert isinstance(error, ModelUnavailable)

    def test_model_missing_message_is_model_unavailable(self):
        error = normalize_http_error(400, _body("The model `gpt-9` does not exist"))
        assert isinstance(error, ModelUnavailable)

    def test_server_error(self):
        error = normalize_http_error(503, "upstream unavailable")
        assert isinstance(error, ServerError)
        assert error.retryable
        assert error.provider_message == "upstream unavailable"

    def test_unsupported_parameter_from_message(self):
        error = normalize_http_error(
            400,
            _body("Unsupported parameter: 'max_tokens' is not supported with this model."),
        )
        assert isinstance(error, InvalidParameters)
        assert error.unsupported_parameter == "max_tokens"
        assert error.is_unsupported_token_parameter

    def test_unsupported_parameter_from_param_field(self):
        error = normalize_http_error(
            400,
            _body("not allowed", code="unsupported_parameter", param="max_output_tokens"),
        )
        assert error.unsupported_parameter == "max_output_tokens"
        assert error.is_unsupported_token_parameter

    def test_other_invalid_parameter_is_not_token_related(self):
        error = normalize_http_error(422, _body("temperature out of range"))
        assert isinstance(error, InvalidParameters)
        assert not error.is_unsupported_token_parameter

    def test_to_dict_has_no_body_secrets(self):
        error = normalize_http_error(401, _body("bad key"), provider="anthropic", model="m")
        data = error.to_dict()
        assert data["category"] == "auth_failed"
        assert data["model"] == "m"


class TestTransportAndStreamErrors:
    def test_timeout_maps_to_first_token(self):
        error = normalize_transport_error(httpx.ReadTimeout("slow"), elapsed_ms=1200)
        assert isinstance(error, TimeoutFirstToken)
        assert error.elapsed_ms == 1200

    def test_connect_error_maps_to_server_error(self):
        error = normalize_transport_error(httpx.ConnectError("refused"))
        assert isinstance(error, ServerError)
        assert error.status is None

    def test_stream_rate_limit(self):
        assert isinstance(normalize_stream_error("Rate limit reached", "rate_limit_error"), RateLimited)

    def test_stream_overloaded_is_server_error(self):
        assert isinstance(normalize_stream_error("Overloaded", "overloaded_error"), ServerError)
