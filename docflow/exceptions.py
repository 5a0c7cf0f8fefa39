"""Typed errors raised by the workflow services.

Every error carries the HTTP status it maps to and a stable machine-readable
code, so the API layer renders them without string matching.

    WorkflowError
    +-- AuthenticationError      401  caller identity missing or unknown
    +-- ForbiddenError           403  caller lacks the role or relationship
    +-- NotFoundError            404  referenced entity does not exist
    +-- PreconditionFailedError  409  status mismatch, already decided
    +-- ValidationFailedError    400  well-formed but unacceptable input
    +-- ConfigurationError       422  route/approver setup cannot be honoured
    +-- TransientStoreError      503  store aborted the transaction; retry-safe
"""

from typing import Any, Optional

from fastapi import status


class WorkflowError(Exception):
    """Base service error with an HTTP status code."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "workflow_error"
    retryable: bool = False

    def __init__(self, detail: str, meta: Optional[dict[str, Any]] = None):
        self.detail = detail
        self.meta = meta or {}
        super().__init__(detail)


class AuthenticationError(WorkflowError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"


class ForbiddenError(WorkflowError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(WorkflowError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PreconditionFailedError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    code = "precondition_failed"


class ValidationFailedError(WorkflowError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_failed"


class ConfigurationError(WorkflowError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "configuration_error"


class TransientStoreError(WorkflowError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "transient_store_failure"
    retryable = True
