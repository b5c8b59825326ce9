"""
Shared - error taxonomy

Commands and queries raise ServiceError; responses.py turns it into the
HTTP answer. The message is what the client sees, so it must never carry
exception text from a lower layer.
"""

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SERVICE_UNAVAILABLE = "service_unavailable"
    SERVICE_TIMEOUT = "service_timeout"
    PAYMENT_DECLINED = "payment_declined"
    CONFLICT = "conflict"
    UPSTREAM_FAILURE = "upstream_failure"
    INTERNAL_FAILURE = "internal_failure"


class ServiceError(Exception):
    def __init__(self, kind: ErrorKind, message: str, **extra) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.extra = extra


class ValidationError(ServiceError):
    def __init__(self, message: str, **extra) -> None:
        super().__init__(ErrorKind.VALIDATION, message, **extra)


class NotFoundError(ServiceError):
    def __init__(self, message: str, **extra) -> None:
        super().__init__(ErrorKind.NOT_FOUND, message, **extra)


class ConflictError(ServiceError):
    """Invalid state transition, e.g. paying an order twice."""

    def __init__(self, message: str, **extra) -> None:
        super().__init__(ErrorKind.CONFLICT, message, **extra)
