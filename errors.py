"""
Error types raised by the service layer.

Every error carries an ``ErrorKind`` tag and the HTTP status it maps to, so the
handlers in ``main`` never have to guess what went wrong from a message.
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    validation = "validation"
    unauthorized = "unauthorized"
    forbidden = "forbidden"
    not_found = "not_found"
    conflict = "conflict"
    upstream = "upstream"
    internal = "internal"


class AppError(Exception):
    kind: ErrorKind = ErrorKind.internal
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.details is not None:
            body["error"] = self.details
        return body


class ValidationFailed(AppError):
    kind = ErrorKind.validation
    status_code = 400


class Unauthorized(AppError):
    kind = ErrorKind.unauthorized
    status_code = 401

    def __init__(self, message: str = "Not authorized", details: Optional[Any] = None):
        super().__init__(message, details)


class Forbidden(AppError):
    kind = ErrorKind.forbidden
    status_code = 403


class NotFound(AppError):
    kind = ErrorKind.not_found
    status_code = 404


class Conflict(AppError):
    kind = ErrorKind.conflict
    status_code = 400


class DuplicateEntry(Conflict):
    status_code = 409


class InsufficientStock(Conflict):
    def __init__(self, product_id: str, title: str, available: int):
        super().__init__(
            f"Insufficient stock for {title}. Available: {available}",
            {"product": product_id, "available": available},
        )
        self.product_id = product_id
        self.title = title
        self.available = available


class InvalidTransition(Conflict):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Cannot transition order from '{from_status}' to '{to_status}'",
            {"from": from_status, "to": to_status},
        )


class UpstreamError(AppError):
    """The payment provider was unreachable or answered with an error."""

    kind = ErrorKind.upstream
    status_code = 502


class InternalError(AppError):
    kind = ErrorKind.internal
    status_code = 500
