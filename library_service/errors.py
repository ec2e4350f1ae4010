"""Error taxonomy shared by the gateway, lending engine and authenticator.

Each error class carries the HTTP status the handler layer answers with, so
the mapping from failure to wire status lives in one place.
"""

from http import HTTPStatus


class LibraryError(Exception):
    """Base class for every expected failure of a library operation."""

    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequest(LibraryError):
    status = HTTPStatus.BAD_REQUEST


class Unauthorized(LibraryError):
    status = HTTPStatus.UNAUTHORIZED


class Forbidden(LibraryError):
    status = HTTPStatus.FORBIDDEN


class NotFound(LibraryError):
    status = HTTPStatus.NOT_FOUND


class Conflict(LibraryError):
    status = HTTPStatus.CONFLICT


class Unavailable(Conflict):
    """No copy of the requested book is left to lend."""


class ServiceError(LibraryError):
    """Storage or hashing failure."""

    status = HTTPStatus.INTERNAL_SERVER_ERROR
