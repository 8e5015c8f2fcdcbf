"""Error taxonomy for the document lifecycle and derivation rules."""

from __future__ import annotations

from typing import Mapping, Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Raised before any network call when required fields or invariants fail.

    ``errors`` maps each offending field to a human-readable message so that a
    form can render every problem at once instead of the first one only.
    """

    def __init__(self, errors: Mapping[str, str]) -> None:
        self.errors = dict(errors)
        detail = "; ".join(f"{field}: {message}" for field, message in self.errors.items())
        super().__init__(f"Validation failed ({detail})")


class InvalidScheduleError(ValidationError):
    """Raised when an end date precedes its start date."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a status change is not permitted from the current state."""

    def __init__(self, current: object, requested: object) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            f"Transition {_status_label(current)} -> {_status_label(requested)} is not allowed"
        )


class MissingSourceError(BusinessRuleViolation):
    """Raised when a derivation is attempted without its source document."""


class IneligibleProductError(BusinessRuleViolation):
    """Raised when a training is requested for a non-training product."""


class LineageMismatchError(BusinessRuleViolation):
    """Raised when linked documents do not share the same offer lineage."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced record is unknown to the loaded collections."""


class OrphanedReferenceError(MissingReferenceError):
    """Raised when a derived record points at a parent that no longer resolves."""

    def __init__(self, resource: str, record_id: object, field: str, missing_id: object) -> None:
        self.resource = resource
        self.record_id = record_id
        self.field = field
        self.missing_id = missing_id
        super().__init__(
            f"{resource} #{record_id} references missing {field} #{missing_id}"
        )


class RemoteError(Exception):
    """Raised for any failure at the transport boundary."""

    def __init__(
        self,
        message: str,
        *,
        method: Optional[str] = None,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.method = method
        self.url = url
        self.status_code = status_code
        super().__init__(message)


def _status_label(value: object) -> str:
    return getattr(value, "value", str(value))


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "InvalidScheduleError",
    "InvalidTransitionError",
    "MissingSourceError",
    "IneligibleProductError",
    "LineageMismatchError",
    "MissingReferenceError",
    "OrphanedReferenceError",
    "RemoteError",
]
