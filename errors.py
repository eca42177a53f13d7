"""Error kinds raised by the catalogue, the lending engine and the identity layer.

Each error carries a stable ``kind`` and the HTTP status it maps to, so the
API can turn any of them into ``{"message": ..., "kind": ...}`` without
knowing where it was raised.
"""


class LibraryError(Exception):
    """Base class for all errors the service reports to callers."""

    kind = "Internal"
    status_code = 500
    default_message = "Server error. Please try again."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"message": self.message, "kind": self.kind}


class NotFoundError(LibraryError):
    """Referenced book, loan or user does not exist."""

    kind = "NotFound"
    status_code = 404
    default_message = "Not found."


class InvalidStateError(LibraryError):
    """Operation is not valid for the current status of the book or loan."""

    kind = "InvalidState"
    status_code = 400
    default_message = "Operation not allowed in the current state."


class InvalidInputError(LibraryError):
    """Request data is missing or malformed."""

    kind = "InvalidInput"
    status_code = 400
    default_message = "Invalid input."


class ForbiddenError(LibraryError):
    kind = "Forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action."


class UnauthenticatedError(LibraryError):
    kind = "Unauthenticated"
    status_code = 401
    default_message = "No token provided. Authorization denied."


class InternalError(LibraryError):
    """Storage or transaction failure; all writes of the operation were rolled back."""
