"""
errors.py — Error Taxonomy of the Order Service

Every component raises one of the `OrderServiceError` subclasses below.
The HTTP layer maps `ErrorKind` to a status code exactly once (see `STATUS_CODES`).
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION_FAILED = "validation_failed"
    NOT_FOUND = "not_found"
    DUPLICATE_REFERENCE = "duplicate_reference"
    UNAUTHORIZED = "unauthorized"
    ALREADY_PROCESSED = "already_processed"
    GATEWAY_FAILURE = "gateway_failure"


STATUS_CODES = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DUPLICATE_REFERENCE: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.ALREADY_PROCESSED: 400,
    ErrorKind.GATEWAY_FAILURE: 502,
}


class OrderServiceError(Exception):
    """
    Base class for all errors surfaced to a caller.

    Attributes:
        kind (ErrorKind): Category used for the transport status code.
        message (str): Human-readable description.
        detail (Any): Optional field-level detail (validation errors, gateway payload).
    """
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]


class ValidationFailed(OrderServiceError):
    kind = ErrorKind.VALIDATION_FAILED


class NotFound(OrderServiceError):
    kind = ErrorKind.NOT_FOUND


class DuplicateReference(OrderServiceError):
    kind = ErrorKind.DUPLICATE_REFERENCE


class Unauthorized(OrderServiceError):
    kind = ErrorKind.UNAUTHORIZED


class AlreadyProcessed(OrderServiceError):
    kind = ErrorKind.ALREADY_PROCESSED


class GatewayFailure(OrderServiceError):
    kind = ErrorKind.GATEWAY_FAILURE


class TransactionAborted(Exception):
    """A transactional write was rolled back. Nothing was committed, so a retry is safe."""


class NotificationUnreachable(Exception):
    """Raised by the notification transport. Never reaches an HTTP caller."""

    def __init__(self, message: str, parse_error: bool = False):
        super().__init__(message)
        self.parse_error = parse_error
