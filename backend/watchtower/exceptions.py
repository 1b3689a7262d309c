"""Exceptions raised by the Watchtower service layer."""

from typing import Optional

from watchtower.services.results import ApiError


class WatchtowerError(Exception):
    """Base class for service errors."""


class OriginUnavailableError(WatchtowerError):
    """An origin fetch failed while no usable cached copy existed."""

    def __init__(self, error: ApiError, source: str = "origin"):
        self.error = error
        self.source = source
        super().__init__(f"{source} unavailable: {error.message}")

    @property
    def status_code(self) -> int:
        if self.error.status and self.error.status >= 400:
            return self.error.status
        return 502

    @property
    def retry_after(self) -> Optional[int]:
        return self.error.retry_after


class InvalidListIdError(WatchtowerError):
    """An IMDB list id is neither a user (ur...) nor a list (ls...) id."""
