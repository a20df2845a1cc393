"""Error taxonomy shared by the service layer and the HTTP error handlers."""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed identifiers or payload shape."""

    status_code = 400


class UnauthorizedError(ServiceError):
    status_code = 401


class NotFoundError(ServiceError):
    """A group, lesson or student does not exist."""

    status_code = 404


class StorageError(ServiceError):
    """The database rejected or failed the unit of work.

    Nothing was persisted; the caller may resubmit the whole operation.
    """

    status_code = 503
    retryable = True


__all__ = [
    "NotFoundError",
    "ServiceError",
    "StorageError",
    "UnauthorizedError",
    "ValidationError",
]
