"""Transport-independent error taxonomy for issuance and lifecycle operations."""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for expected, caller-correctable failures.

    ``status_code`` is consulted only by the HTTP layer when rendering the error.
    """

    status_code = 500
    default_code = "internal_error"

    def __init__(self, detail: str, code: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code


class NotFoundError(ServiceError):
    """Referenced request, user, group, or certificate does not exist."""

    status_code = 404
    default_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness or protected-resource violation."""

    status_code = 409
    default_code = "conflict"


class InvalidStateError(ServiceError):
    """Operation not valid in the entity's current lifecycle state."""

    status_code = 400
    default_code = "invalid_state"


class InvalidInputError(ServiceError):
    """Malformed CSR, bad date ordering, or invalid challenge."""

    status_code = 400
    default_code = "invalid_input"


class UnauthorizedError(ServiceError):
    """Bad, expired, or mismatched bearer credential."""

    status_code = 401
    default_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Policy-protected operation attempted."""

    status_code = 403
    default_code = "forbidden"


class InternalError(ServiceError):
    """CA key or store failure."""

    status_code = 500
    default_code = "internal_error"
