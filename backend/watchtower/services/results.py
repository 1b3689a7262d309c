"""Typed results for calls to origin services (Plex, TMDB, Trakt, IMDB)."""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

import httpx

T = TypeVar("T")

# Code used for failures that never produced an HTTP response
NETWORK_ERROR = -1


@dataclass
class ApiError:
    """Failure details, `status` mirrors the HTTP status when there was one."""

    code: int
    message: str
    status: Optional[int] = None
    retry_after: Optional[int] = None

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


@dataclass
class ApiResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None

    @classmethod
    def ok(cls, data: Any) -> "ApiResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        code: int,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[int] = None,
    ) -> "ApiResult":
        return cls(success=False, error=ApiError(code, message, status, retry_after))


def error_from_response(response: httpx.Response) -> ApiResult:
    """Build a failed result from a non-2xx response."""
    retry_after = None
    if response.status_code == 429:
        header = response.headers.get("Retry-After")
        if header and header.isdigit():
            retry_after = int(header)
    return ApiResult.fail(
        response.status_code,
        f"HTTP {response.status_code}: {response.reason_phrase}",
        status=response.status_code,
        retry_after=retry_after,
    )


def error_from_exception(exc: Exception) -> ApiResult:
    """Build a failed result from a transport error or timeout."""
    if isinstance(exc, httpx.TimeoutException):
        return ApiResult.fail(NETWORK_ERROR, "Request timed out")
    return ApiResult.fail(NETWORK_ERROR, str(exc) or exc.__class__.__name__)
