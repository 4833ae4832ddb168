import httpx
import pytest

from romshelf.api.error_handler import (
    APIError,
    AuthenticationError,
    ErrorCategory,
    MalformedQueryError,
    MissingCredentialsError,
    PayloadTooLargeError,
    RateLimitedError,
    RetryableAPIError,
    TokenExpiredError,
    categorize_error,
    get_error_message,
    handle_http_status,
    is_retryable_error,
)


@pytest.mark.unit
@pytest.mark.parametrize("status, exc_type", [
    (401, TokenExpiredError),
    (403, AuthenticationError),
    (413, PayloadTooLargeError),
    (429, RateLimitedError),
    (400, MalformedQueryError),
    (500, RetryableAPIError),
    (503, RetryableAPIError),
    (404, APIError),
])
def test_handle_http_status_maps_codes(status, exc_type):
    with pytest.raises(exc_type) as excinfo:
        handle_http_status(status, context="games")
    assert excinfo.value.status_code == status
    assert "(games)" in str(excinfo.value)


@pytest.mark.unit
def test_success_status_does_not_raise():
    handle_http_status(200)
    handle_http_status(204)


@pytest.mark.unit
def test_get_error_message_fallback():
    assert get_error_message(429) == "Too many requests"
    assert "418" in get_error_message(418)


@pytest.mark.unit
@pytest.mark.parametrize("error, category", [
    (RateLimitedError("slow down", 429), ErrorCategory.TRANSIENT),
    (TokenExpiredError("expired", 401), ErrorCategory.TRANSIENT),
    (PayloadTooLargeError("too big", 413), ErrorCategory.CALLER),
    (MalformedQueryError("bad", 400), ErrorCategory.CALLER),
    (AuthenticationError("nope", 403), ErrorCategory.FATAL),
    (MissingCredentialsError("missing"), ErrorCategory.FATAL),
    (httpx.ConnectError("refused"), ErrorCategory.TRANSIENT),
    (ValueError("odd"), ErrorCategory.TRANSIENT),
])
def test_categorize_error(error, category):
    returned, actual = categorize_error(error)
    assert returned is error
    assert actual == category


@pytest.mark.unit
def test_categorize_http_status_error_uses_status_mapping():
    request = httpx.Request("POST", "https://api.example/v4/games")
    response = httpx.Response(413, request=request)
    error = httpx.HTTPStatusError("too large", request=request, response=response)

    _, category = categorize_error(error)
    assert category == ErrorCategory.CALLER
    assert not is_retryable_error(error)
    assert is_retryable_error(RateLimitedError("again", 429))
