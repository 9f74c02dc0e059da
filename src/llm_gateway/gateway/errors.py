"""Closed error taxonomy for the LLM Gateway.

Every adapter raises only GatewayError subclasses. Provider-specific HTTP
statuses, bodies and transport failures are mapped here, so callers never
see a raw provider shape:

    401/403                     -> AuthFailed
    429                         -> RateLimited
    400/413/422 (and other 4xx) -> InvalidParameters
    404 or "model not found"    -> ModelUnavailable
    5xx and transport failures  -> ServerError

The streaming engine raises TimeoutFirstToken, TimeoutStall and
MalformedStream; the tool loop raises ToolIterationLimitReached.
"""

import json
import re
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

TOKEN_FIELDS = ("max_tokens", "max_output_tokens", "max_completion_tokens")

_UNSUPPORTED_PARAM_RE = re.compile(
    r"unsupported parameter:?\s*['\"`]?([a-z_]+)", re.IGNORECASE
)
_MODEL_MISSING_MARKERS = (
    "model not found",
    "model_not_found",
    "does not exist",
    "unknown model",
    "no endpoints found",
    "is not a valid model",
)


class ErrorCategory(str, Enum):
    """Category names used in logs and events."""

    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    INVALID_PARAMETERS = "invalid_parameters"
    MODEL_UNAVAILABLE = "model_unavailable"
    SERVER_ERROR = "server_error"
    TIMEOUT_FIRST_TOKEN = "timeout_first_token"
    TIMEOUT_STALL = "timeout_stall"
    MALFORMED_STREAM = "malformed_stream"
    TOOL_ITERATION_LIMIT = "tool_iteration_limit"


class GatewayError(Exception):
    """Base class for all gateway errors.

    Attributes:
        provider: Provider (adapter) name that produced the error
        model: Model id of the failed call
        status: HTTP status code, if any
        provider_message: Message extracted from the provider body
        provider_code: Error code/type extracted from the provider body
    """

    category: ErrorCategory = ErrorCategory.SERVER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status: Optional[int] = None,
        provider_message: Optional[str] = None,
        provider_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model = model
        self.status = status
        self.provider_message = provider_message
        self.provider_code = provider_code
        # Set by the streaming engine once any byte was received.
        self.stream_started = False

    def to_dict(self) -> Dict[str, Any]:
        """Return a log-safe representation."""
        return {
            "category": self.category.value,
            "message": self.message,
            "provider": self.provider,
            "model": self.model,
            "status": self.status,
            "provider_code": self.provider_code,
        }


class AuthFailed(GatewayError):
    category = ErrorCategory.AUTH_FAILED


class RateLimited(GatewayError):
    category = ErrorCategory.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class InvalidParameters(GatewayError):
    category = ErrorCategory.INVALID_PARAMETERS

    def __init__(
        self,
        message: str,
        *,
        unsupported_parameter: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.unsupported_parameter = unsupported_parameter

    @property
    def is_unsupported_token_parameter(self) -> bool:
        """True when the provider rejected the output-token field name."""
        return self.unsupported_parameter in TOKEN_FIELDS


class ModelUnavailable(GatewayError):
    category = ErrorCategory.MODEL_UNAVAILABLE


class ServerError(GatewayError):
    category = ErrorCategory.SERVER_ERROR
    retryable = True


class TimeoutFirstToken(GatewayError):
    category = ErrorCategory.TIMEOUT_FIRST_TOKEN

    def __init__(self, elapsed_ms: int, **kwargs: Any):
        super().__init__(f"No data received within {elapsed_ms}ms", **kwargs)
        self.elapsed_ms = elapsed_ms


class TimeoutStall(GatewayError):
    """Stream went silent after data had started flowing.

    Carries whatever had been received so callers may salvage it.
    """

    category = ErrorCategory.TIMEOUT_STALL

    def __init__(
        self,
        elapsed_ms: int,
        bytes_received: int,
        partial_text: str = "",
        partial_tool_arguments: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ):
        super().__init__(
            f"Stream stalled after {bytes_received} bytes ({elapsed_ms}ms elapsed)",
            **kwargs,
        )
        self.elapsed_ms = elapsed_ms
        self.bytes_received = bytes_received
        self.partial_text = partial_text
        self.partial_tool_arguments = dict(partial_tool_arguments or {})


class MalformedStream(GatewayError):
    category = ErrorCategory.MALFORMED_STREAM


class ToolIterationLimitReached(GatewayError):
    category = ErrorCategory.TOOL_ITERATION_LIMIT

    def __init__(self, iterations: int, last_response: Any = None, **kwargs: Any):
        super().__init__(
            f"Tool loop stopped after {iterations} iterations", **kwargs
        )
        self.iterations = iterations
        self.last_response = last_response


# =============================================================================
# Normalization
# =============================================================================


def _extract_provider_error(body: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Pull (message, code, param) out of the common provider error shapes.

    Handles ``{"error": {"message", "type"|"code", "param"}}``,
    ``{"error": "..."}`` and ``{"message": "..."}``.
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None, None, None
    if not isinstance(data, dict):
        return None, None, None

    error = data.get("error", data)
    if isinstance(error, str):
        return error, None, None
    if not isinstance(error, dict):
        return None, None, None

    message = error.get("message")
    code = error.get("code") or error.get("type")
    param = error.get("param")
    return (
        str(message) if message is not None else None,
        str(code) if code is not None else None,
        str(param) if param is not None else None,
    )


def _parse_retry_after(headers: Mapping[str, str], body: str) -> Optional[float]:
    value = None
    for key, header_value in headers.items():
        if key.lower() == "retry-after":
            value = header_value
            break
    if value is not None:
        try:
            return max(0.0, float(value))
        except ValueError:
            return None
    match = re.search(r"try again in ([0-9.]+)\s*(ms|s)", body, re.IGNORECASE)
    if match:
        seconds = float(match.group(1))
        return seconds / 1000.0 if match.group(2).lower() == "ms" else seconds
    return None


def _find_unsupported_parameter(
    message: str, code: Optional[str], param: Optional[str]
) -> Optional[str]:
    if param and code and "unsupported" in code.lower():
        return param
    match = _UNSUPPORTED_PARAM_RE.search(message)
    if match:
        return match.group(1).lower()
    lowered = message.lower()
    if "not supported" in lowered or "unsupported" in lowered:
        for field_name in TOKEN_FIELDS:
            if f"'{field_name}'" in lowered or f'"{field_name}"' in lowered:
                return field_name
    return None


def normalize_http_error(
    status: int,
    body: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> GatewayError:
    """Map an HTTP error response to the gateway taxonomy.

    Args:
        status: HTTP status code (non-2xx)
        body: Response body text
        headers: Response headers (used for Retry-After)
        provider: Provider name for error context
        model: Model id for error context

    Returns:
        GatewayError subclass instance (never raises)
    """
    headers = headers or {}
    body = body or ""
    provider_message, provider_code, param = _extract_provider_error(body)
    detail = provider_message or body[:300] or f"HTTP {status}"
    context = dict(
        provider=provider,
        model=model,
        status=status,
        provider_message=provider_message or body[:300],
        provider_code=provider_code,
    )
    lowered = detail.lower()

    if status in (401, 403):
        return AuthFailed(f"Authentication failed ({status}): {detail}", **context)
    if status == 429:
        return RateLimited(
            f"Rate limited: {detail}",
            retry_after=_parse_retry_after(headers, body),
            **context,
        )
    if status == 404 or any(marker in lowered for marker in _MODEL_MISSING_MARKERS):
        return ModelUnavailable(f"Model unavailable: {detail}", **context)
    if status >= 500:
        return ServerError(f"Server error ({status}): {detail}", **context)
    if status == 408:
        return ServerError(f"Request timeout ({status}): {detail}", **context)
    return InvalidParameters(
        f"Invalid parameters ({status}): {detail}",
        unsupported_parameter=_find_unsupported_parameter(detail, provider_code, param),
        **context,
    )


def normalize_transport_error(
    error: httpx.HTTPError,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    elapsed_ms: int = 0,
) -> GatewayError:
    """Map an httpx transport exception to the gateway taxonomy."""
    if isinstance(error, httpx.TimeoutException):
        return TimeoutFirstToken(elapsed_ms, provider=provider, model=model)
    return ServerError(
        f"Transport failure: {type(error).__name__}: {error}",
        provider=provider,
        model=model,
    )


def normalize_stream_error(
    message: str,
    code: Optional[str] = None,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> GatewayError:
    """Map an error event received inside a stream."""
    marker = f"{code or ''} {message}".lower()
    context = dict(provider=provider, model=model, provider_message=message, provider_code=code)
    if "rate_limit" in marker or "rate limit" in marker:
        return RateLimited(f"Rate limited mid-stream: {message}", **context)
    if "authentication" in marker or "permission" in marker:
        return AuthFailed(f"Authentication failed mid-stream: {message}", **context)
    if "invalid_request" in marker:
        return InvalidParameters(f"Invalid parameters: {message}", **context)
    return ServerError(f"Stream error: {message}", **context)


__all__ = [
    "ErrorCategory",
    "GatewayError",
    "AuthFailed",
    "RateLimited",
    "InvalidParameters",
    "ModelUnavailable",
    "ServerError",
    "TimeoutFirstToken",
    "TimeoutStall",
    "MalformedStream",
    "ToolIterationLimitReached",
    "normalize_http_error",
    "normalize_transport_error",
    "normalize_stream_error",
    "TOKEN_FIELDS",
]
