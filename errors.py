"""
Error taxonomy for the store directory.

Repositories raise these; the HTTP layer maps them to status codes with a
single exception handler, so the message is always meant for a human.
"""


class DirectoryError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DirectoryError):
    """Missing or malformed required fields."""
    status_code = 422


class ConflictError(DirectoryError):
    """Duplicate email, or a store slug taken by a concurrent write."""
    status_code = 409


class PermissionDeniedError(DirectoryError):
    """A user tried to edit a store they do not own."""
    status_code = 403


class NotFoundError(DirectoryError):
    status_code = 404


class ExpiredError(NotFoundError):
    """Reset token unknown or past its expiry. Both cases read the same."""


class DeliveryError(DirectoryError):
    status_code = 502
