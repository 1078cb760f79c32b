#!/usr/bin/env python3
"""Common error types shared across modules.

Every error raised while refreshing a single feed derives from RefreshError,
so the batch loop can isolate one feed's failure from the rest.
"""

from typing import Optional


class RefreshError(Exception):
    """A feed refresh failed for this cycle.

    Attributes:
        url: The feed URL, when the failure is scoped to one feed.
        cause: The underlying exception or a short description of it.
    """

    def __init__(self, message: str, url: Optional[str] = None, cause: Optional[object] = None):
        super().__init__(message)
        self.url = url
        self.cause = cause

    def __str__(self) -> str:
        message = super().__str__()
        if self.url:
            message = f"{message} ({self.url})"
        if self.cause is not None:
            message = f"{message}: {self.cause}"
        return message


class FetchError(RefreshError):
    """Transport failure or an HTTP status other than 200/304."""


class ParseError(RefreshError):
    """The response body is not a feed document we can read."""


class StorageError(RefreshError):
    """A database operation failed."""


__all__ = ["RefreshError", "FetchError", "ParseError", "StorageError"]
