from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for failures the core reports back to its callers."""

    code = "crm_error"
    status_code = 400

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(CRMError):
    """Raised when a required field is missing or a value is invalid."""

    code = "validation_error"
    status_code = 422

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = sorted(set(fields or []))
        super().__init__(message, details={"fields": self.fields})


class ImmutableFieldError(CRMError):
    """Raised when a patch touches a synergy's identity fields."""

    code = "immutable_field"
    status_code = 409

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(
            f"Immutable fields for resource '{resource}': {', '.join(self.fields)}",
            details={"fields": self.fields},
        )


class NotFoundError(CRMError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, entity_id: Any) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found", details={"kind": kind, "id": str(entity_id)})


class ConflictError(CRMError):
    """Raised when a write loses a race or breaks a state rule."""

    code = "conflict"
    status_code = 409
