"""Exception types shared by the gateway, the maintenance engines and the API."""
from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """Invocation parameters are missing or invalid. Raised before any store access."""


class NotFound(LookupError):
    """A referenced record does not exist."""

    def __init__(self, label: str, record_id: str):
        super().__init__(f"{label} {record_id} not found")
        self.label = label
        self.record_id = record_id


class WriteFailure(RuntimeError):
    """A single create/update against the entity store failed."""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id


class MaintenanceBusy(RuntimeError):
    """Another migration or repair run holds the maintenance lock."""


class OperationFailed(RuntimeError):
    """A mutating maintenance operation aborted on its first failed write.

    ``partial`` holds whatever was accumulated before the failure. Nothing is
    rolled back, so callers must inspect it before re-running.
    """

    label = "Operation failed"

    def __init__(self, message: str, partial: Any = None):
        super().__init__(message)
        self.partial = partial


class MigrationFailed(OperationFailed):
    label = "Migration failed"


class RepairFailed(OperationFailed):
    label = "Fix failed"
