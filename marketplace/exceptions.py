"""Domain exceptions raised by the service layer.

The API layer maps each class to an HTTP status in ``marketplace.main``.
Row-level validation problems are never raised; they travel as ``RowError``
values inside parse and staging results.
"""


class MarketplaceError(Exception):
    """Base class for expected, user-facing failures."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UploadRejectedError(MarketplaceError):
    """The uploaded file was rejected as a whole; nothing was staged."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class InvalidInputError(MarketplaceError):
    """Request parameters are well-formed but not acceptable."""


class NotFoundError(MarketplaceError):
    """Resource does not exist (or is not visible to the caller)."""

    status_code = 404


class ForbiddenError(MarketplaceError):
    """Caller is authenticated but not allowed to act on the resource."""

    status_code = 403


class ConflictError(MarketplaceError):
    """Operation is not valid for the resource's current state."""

    status_code = 409


class CommitFailedError(MarketplaceError):
    """Commit rolled back; the batch is FAILED and nothing was committed."""

    status_code = 500
