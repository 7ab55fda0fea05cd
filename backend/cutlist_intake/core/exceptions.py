"""
Error taxonomy for provider calls.

  ErrorCategory       : the classification used by retry and fallback policy
  ProviderError       : raised by provider adapters when the failure kind is known
  classify_error()    : maps ANY exception (ours, httpx, SDK) to a category

Policy (applied in llm/retry.py and the orchestrator):
  retried locally   : NETWORK_ERROR, RATE_LIMIT, TIMEOUT, API_ERROR
  terminal          : CONTENT_FILTER (go straight to the next provider),
                      INVALID_RESPONSE, UNKNOWN
"""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorCategory(str, Enum):
    NETWORK_ERROR    = "NETWORK_ERROR"
    RATE_LIMIT       = "RATE_LIMIT"
    TIMEOUT          = "TIMEOUT"
    CONTENT_FILTER   = "CONTENT_FILTER"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    API_ERROR        = "API_ERROR"
    UNKNOWN          = "UNKNOWN"


RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset({
    ErrorCategory.NETWORK_ERROR,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.TIMEOUT,
    ErrorCategory.API_ERROR,
})


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class IntakeError(Exception):
    """Root of all errors raised by this package."""


class ConfigurationError(IntakeError):
    """Unknown provider, empty provider chain, or similar wiring mistake."""


class ProviderError(IntakeError):
    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class NetworkError(ProviderError):
    category = ErrorCategory.NETWORK_ERROR


class RateLimitError(ProviderError):
    category = ErrorCategory.RATE_LIMIT


class ProviderTimeoutError(ProviderError):
    category = ErrorCategory.TIMEOUT


class ContentFilterError(ProviderError):
    """The provider refused the input. Retrying the same provider cannot succeed."""
    category = ErrorCategory.CONTENT_FILTER


class InvalidResponseError(ProviderError):
    category = ErrorCategory.INVALID_RESPONSE


class ApiError(ProviderError):
    category = ErrorCategory.API_ERROR


class AllProvidersFailedError(IntakeError):
    """Every provider in the chain failed. `errors` keeps one line per provider."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("All providers failed: " + "; ".join(errors))
        self.errors = errors


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_NETWORK_HINTS   = ("network", "econnrefused", "enotfound", "connection refused",
                    "connection reset", "fetch failed", "apiconnectionerror")
_RATE_HINTS      = ("rate limit", "ratelimit", "429", "too many requests", "throttl")
_TIMEOUT_HINTS   = ("timeout", "timed out")
_REFUSAL_HINTS   = ("sorry", "can't assist", "cannot assist", "content policy",
                    "content filter", "refused")
_INVALID_HINTS   = ("json", "parse", "invalid response")
_API_HINTS       = ("api", "500", "502", "503", "internal server error",
                    "service unavailable", "overloaded")


def classify_error(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into an ErrorCategory.

    Typed errors win over heuristics; heuristics look at the class name and
    the message, in the same precedence order as the category list above.
    """
    if isinstance(exc, ProviderError):
        return exc.category

    if isinstance(exc, httpx.TimeoutException):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status >= 500:
            return ErrorCategory.API_ERROR
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK_ERROR
    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT

    name    = type(exc).__name__.lower()
    message = str(exc).lower()
    haystack = f"{name} {message}"

    if any(h in haystack for h in _NETWORK_HINTS):
        return ErrorCategory.NETWORK_ERROR
    if any(h in haystack for h in _RATE_HINTS):
        return ErrorCategory.RATE_LIMIT
    if any(h in haystack for h in _TIMEOUT_HINTS):
        return ErrorCategory.TIMEOUT
    if any(h in message for h in _REFUSAL_HINTS):
        return ErrorCategory.CONTENT_FILTER
    if any(h in haystack for h in _INVALID_HINTS):
        return ErrorCategory.INVALID_RESPONSE
    if any(h in haystack for h in _API_HINTS):
        return ErrorCategory.API_ERROR
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    return category in RETRYABLE_CATEGORIES
