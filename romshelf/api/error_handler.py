"""Error taxonomy for metadata API interactions."""

import logging
from enum import Enum
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categorize errors for retry and routing decisions."""
    TRANSIENT = "transient"  # 429, token expiry, network - retry or degrade
    CALLER = "caller"        # 400, 413 - fail this call only, no retry
    FATAL = "fatal"          # credentials, environment - abort the run


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableAPIError(APIError):
    """Transient failure; the call may succeed if repeated."""
    pass


class RateLimitedError(RetryableAPIError):
    """Upstream rejected the call for rate limiting (HTTP 429)."""
    pass


class TokenExpiredError(RetryableAPIError):
    """Access token was rejected (HTTP 401); re-authenticate and repeat."""
    pass


class CallerError(APIError):
    """The request itself is wrong; repeating it cannot help."""
    pass


class PayloadTooLargeError(CallerError):
    """Request body exceeded the upstream size limit (HTTP 413)."""
    pass


class MalformedQueryError(CallerError):
    """Upstream could not parse the query (HTTP 400)."""
    pass


class FatalAPIError(APIError):
    """Fatal API error requiring the run to stop."""
    pass


class AuthenticationError(FatalAPIError):
    """Credentials were rejected or no token could be obtained."""
    pass


class MissingCredentialsError(FatalAPIError):
    """Online mode was requested without client credentials."""
    pass


HTTP_STATUS_MESSAGES = {
    200: "Success",
    400: "Malformed query",
    401: "Access token expired or invalid",
    403: "Access forbidden",
    413: "Request payload too large",
    429: "Too many requests",
    500: "Upstream server error",
    502: "Bad gateway",
    503: "Service unavailable",
    504: "Gateway timeout",
}


def get_error_message(status_code: int) -> str:
    """
    Get user-friendly error message for HTTP status code.

    Args:
        status_code: HTTP status code

    Returns:
        Error message string
    """
    return HTTP_STATUS_MESSAGES.get(
        status_code,
        f"Unexpected response (HTTP {status_code})"
    )


def handle_http_status(status_code: int, context: str = "") -> None:
    """
    Raise the exception matching an HTTP status code.

    Args:
        status_code: HTTP status code from the API
        context: Additional context for the error message

    Raises:
        TokenExpiredError: 401
        AuthenticationError: 403
        PayloadTooLargeError: 413
        RateLimitedError: 429
        MalformedQueryError: 400
        RetryableAPIError: 5xx
        APIError: any other non-2xx status
    """
    if 200 <= status_code < 300:
        return

    msg = get_error_message(status_code)
    if context:
        msg = f"{msg} ({context})"

    if status_code == 401:
        raise TokenExpiredError(msg, status_code)
    if status_code == 403:
        raise AuthenticationError(msg, status_code)
    if status_code == 413:
        raise PayloadTooLargeError(msg, status_code)
    if status_code == 429:
        raise RateLimitedError(msg, status_code)
    if status_code == 400:
        raise MalformedQueryError(msg, status_code)
    if status_code >= 500:
        raise RetryableAPIError(msg, status_code)
    raise APIError(msg, status_code)


def categorize_error(exception: Exception) -> Tuple[Exception, ErrorCategory]:
    """
    Categorize an error for routing.

    Args:
        exception: Exception to categorize

    Returns:
        Tuple of (exception, ErrorCategory)
    """
    if isinstance(exception, FatalAPIError):
        return (exception, ErrorCategory.FATAL)

    if isinstance(exception, CallerError):
        return (exception, ErrorCategory.CALLER)

    if isinstance(exception, (RetryableAPIError, httpx.TransportError)):
        return (exception, ErrorCategory.TRANSIENT)

    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        try:
            handle_http_status(status)
        except APIError as mapped:
            return categorize_error(mapped)
        return (exception, ErrorCategory.TRANSIENT)

    # Unknown failures in a single lookup never abort the batch
    return (exception, ErrorCategory.TRANSIENT)


def is_retryable_error(error: Exception) -> bool:
    """Check if an error should be retried."""
    return categorize_error(error)[1] == ErrorCategory.TRANSIENT
