"""Errors raised by the circulation services.

Every error is recoverable: the API layer turns it into a JSON body and an
HTTP status so the caller can retry or pick another action.
"""
from typing import Any, Optional


class CirculationError(Exception):
    """Base class for all domain errors."""

    error_code = "CIRCULATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class PermissionDenied(CirculationError):
    error_code = "PERMISSION_DENIED"
    status_code = 403


class NotFound(CirculationError):
    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} with id {resource_id} not found",
            details={"resource": resource, "id": resource_id},
        )


class InvalidState(CirculationError):
    error_code = "INVALID_STATE"
    status_code = 409


class OutOfStock(CirculationError):
    error_code = "OUT_OF_STOCK"
    status_code = 409

    def __init__(self, title_id: int):
        super().__init__(
            f"No available copies of title {title_id}",
            details={"title_id": title_id},
        )


class AlreadySettled(CirculationError):
    error_code = "ALREADY_SETTLED"
    status_code = 409


class Conflict(CirculationError):
    error_code = "CONFLICT"
    status_code = 409


class ConcurrentUpdate(CirculationError):
    error_code = "CONCURRENT_UPDATE"
    status_code = 409

    def __init__(self, message: str = "Record was changed by another transaction, retry"):
        super().__init__(message)


class InventoryInconsistency(UserWarning):
    """A return would push available copies past the title's total."""
