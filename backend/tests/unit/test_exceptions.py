"""
Unit Tests: error classification
"""

from __future__ import annotations

import httpx
import pytest

from cutlist_intake.core.exceptions import (
    AllProvidersFailedError,
    ApiError,
    ContentFilterError,
    ErrorCategory,
    InvalidResponseError,
    NetworkError,
    ProviderTimeoutError,
    RateLimitError,
    classify_error,
    is_retryable,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://llm.example.com/v1/chat")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("bad status", request=request, response=response)


@pytest.mark.unit
class TestClassifyError:

    @pytest.mark.parametrize("exc, category", [
        (NetworkError("x"), ErrorCategory.NETWORK_ERROR),
        (RateLimitError("x"), ErrorCategory.RATE_LIMIT),
        (ProviderTimeoutError("x"), ErrorCategory.TIMEOUT),
        (ContentFilterError("x"), ErrorCategory.CONTENT_FILTER),
        (InvalidResponseError("x"), ErrorCategory.INVALID_RESPONSE),
        (ApiError("x"), ErrorCategory.API_ERROR),
    ])
    def test_typed_errors_carry_their_category(self, exc, category):
        assert classify_error(exc) == category

    def test_typed_category_wins_over_message(self):
        assert classify_error(ApiError("network timeout 429")) == ErrorCategory.API_ERROR

    def test_httpx_transport_errors(self):
        assert classify_error(httpx.ConnectError("refused")) == ErrorCategory.NETWORK_ERROR
        assert classify_error(httpx.ReadTimeout("slow")) == ErrorCategory.TIMEOUT

    def test_httpx_status_errors(self):
        assert classify_error(_status_error(429)) == ErrorCategory.RATE_LIMIT
        assert classify_error(_status_error(503)) == ErrorCategory.API_ERROR
        assert classify_error(_status_error(400)) == ErrorCategory.UNKNOWN

    def test_builtin_timeout(self):
        assert classify_error(TimeoutError()) == ErrorCategory.TIMEOUT

    @pytest.mark.parametrize("message, category", [
        ("connect ECONNREFUSED 127.0.0.1:443", ErrorCategory.NETWORK_ERROR),
        ("Rate limit exceeded for model", ErrorCategory.RATE_LIMIT),
        ("Request timed out", ErrorCategory.TIMEOUT),
        ("I'm sorry, I can't assist with that", ErrorCategory.CONTENT_FILTER),
        ("Unexpected token in JSON at position 12", ErrorCategory.INVALID_RESPONSE),
        ("502 Bad Gateway", ErrorCategory.API_ERROR),
        ("something odd happened", ErrorCategory.UNKNOWN),
    ])
    def test_message_heuristics(self, message, category):
        assert classify_error(Exception(message)) == category


@pytest.mark.unit
class TestRetryability:

    @pytest.mark.parametrize("category", [
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TIMEOUT,
        ErrorCategory.API_ERROR,
    ])
    def test_transient_categories_are_retryable(self, category):
        assert is_retryable(category)

    @pytest.mark.parametrize("category", [
        ErrorCategory.CONTENT_FILTER,
        ErrorCategory.INVALID_RESPONSE,
        ErrorCategory.UNKNOWN,
    ])
    def test_terminal_categories_are_not(self, category):
        assert not is_retryable(category)


@pytest.mark.unit
def test_all_providers_failed_keeps_each_error():
    exc = AllProvidersFailedError(["aws_bedrock: down", "openai: slow"])

    assert exc.errors == ["aws_bedrock: down", "openai: slow"]
    assert str(exc) == "All providers failed: aws_bedrock: down; openai: slow"
