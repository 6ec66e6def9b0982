"""
Exception types raised by vtwatch components.
"""

from typing import Optional


class VTWatchError(Exception):
    """Base class for all vtwatch errors."""


class QuotaExceededError(VTWatchError):
    """Raised when the daily or monthly request cap has been reached."""

    def __init__(self, period: str, used: int, limit: int):
        self.period = period
        self.used = used
        self.limit = limit
        super().__init__(f"{period.capitalize()} quota exceeded ({used}/{limit})")


class ApiError(VTWatchError):
    """An HTTP error response from the remote API."""

    def __init__(self, status_code: int, message: str = "", body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"API request failed with HTTP {status_code}")


class NotFoundError(ApiError):
    """HTTP 404: the requested hash or analysis does not exist."""


class RateLimitedError(ApiError):
    """HTTP 429: the API rejected the request because of its rate limit."""


class ServerError(ApiError):
    """HTTP 5xx: transient failure on the API side."""


class UploadRejectedError(VTWatchError):
    """The upload endpoint refused a file."""


class DeserializationError(VTWatchError):
    """A response body could not be decoded."""


def raise_for_status(status_code: int, body: Optional[str] = None, url: str = "") -> None:
    """Raise the matching ApiError subclass for a non-success status code."""
    if status_code < 400:
        return
    where = f" for {url}" if url else ""
    if status_code == 404:
        raise NotFoundError(status_code, f"Not found{where}", body)
    if status_code == 429:
        raise RateLimitedError(status_code, f"Rate limited (HTTP 429){where}", body)
    if status_code >= 500:
        raise ServerError(status_code, f"Server error (HTTP {status_code}){where}", body)
    raise ApiError(status_code, f"HTTP {status_code}{where}", body)


class OperationCancelledError(VTWatchError):
    """The shared stop event was set while an operation was waiting."""
