from __future__ import annotations

from typing import List, Optional


class BookHubError(Exception):
    """Base class for errors the sync engine reports to the user.

    ``retryable`` errors are left to the next debounce/alarm tick; everything
    else needs the user to act (fix credentials, run a full sync, ...).
    """

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationFailed(BookHubError):
    pass


class AccessDenied(BookHubError):
    pass


class RateLimited(BookHubError):
    retryable = True


class RemoteConflict(BookHubError):
    """A write was rejected because the remote file changed since it was last seen."""


class NotFound(BookHubError):
    pass


class TransportError(BookHubError):
    retryable = True


class InvalidRemoteData(BookHubError):
    """A remote entry file could not be parsed."""


class MergeConflict(BookHubError):
    def __init__(self, message: str, details: Optional[List] = None):
        super().__init__(message)
        self.details = list(details or [])
