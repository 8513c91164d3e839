from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base for failures services raise with a stable machine-readable code."""

    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "error"

    def __init__(self, detail: str, *, details: Any = None) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail)
        self.details = details


class UnauthorizedError(DomainError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


class ForbiddenError(DomainError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(DomainError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(DomainError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "conflict"


class InviteExpiredError(DomainError):
    status_code_default = status.HTTP_410_GONE
    code = "invite_expired"


class InviteAlreadyProcessedError(DomainError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "invite_already_processed"


class InviteEmailMismatchError(DomainError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "invite_email_mismatch"


class InvalidRoleError(DomainError):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_role"


class ValidationFailedError(DomainError):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_failed"


class ExternalServiceError(DomainError):
    status_code_default = status.HTTP_502_BAD_GATEWAY
    code = "external_service_error"
