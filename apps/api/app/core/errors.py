from __future__ import annotations


class CRMError(Exception):
    """Base error for every failure surfaced by the CRM core.

    ``kind`` names the specific failure (``InvalidName``, ``DuplicateColumn``...)
    and ``status_code`` is what the HTTP layer answers with.
    """

    status_code = 500
    default_kind = "InternalError"

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        self.message = message
        self.kind = kind or self.default_kind
        super().__init__(message)


class ValidationError(CRMError):
    """Bad field name, type, options or a missing required value. Never retried."""

    status_code = 400
    default_kind = "ValidationFailed"


class ConflictError(CRMError):
    """Duplicate column, field definition or user."""

    status_code = 409
    default_kind = "Duplicate"


class NotFoundError(CRMError):
    """A referenced customer, field definition or user does not exist."""

    status_code = 404
    default_kind = "NotFound"


class AuthenticationError(CRMError):
    status_code = 401
    default_kind = "Unauthenticated"


class PermissionDeniedError(CRMError):
    status_code = 403
    default_kind = "Forbidden"


class TransientStoreError(CRMError):
    """Connection loss or timeout. Surfaced as an internal error; retry is the caller's call."""

    status_code = 500
    default_kind = "StoreUnavailable"


class StoreIntegrityError(CRMError):
    """Schema and field registry disagree, or cannot be kept in agreement. Fatal."""

    status_code = 500
    default_kind = "IntegrityViolation"
