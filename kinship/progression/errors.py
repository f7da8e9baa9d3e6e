"""Error taxonomy for the progression engine."""

from __future__ import annotations

from typing import Any


class ProgressionError(Exception):
    """Base class for every error raised by the progression engine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ProgressionError):
    """Request rejected synchronously. Retrying the same call will not help."""


class RelationshipNotFound(ValidationError):
    def __init__(self, relationship_id: str):
        super().__init__(
            f"Relationship not found: {relationship_id}",
            {"relationship_id": relationship_id},
        )


class NotARelationshipParty(ValidationError):
    def __init__(self, relationship_id: str, party_id: str):
        super().__init__(
            "Only the two relationship parties can perform this action.",
            {"relationship_id": relationship_id, "party_id": party_id},
        )


class ConflictError(ProgressionError):
    """Optimistic write lost against a concurrent writer. Re-read and retry."""


class UpstreamUnavailable(ProgressionError):
    """The activity/metrics source could not be reached."""


class InvariantViolation(ProgressionError):
    """A correctness bug upstream. Fatal for the operation; never swallowed."""


__all__ = [
    "ProgressionError",
    "ValidationError",
    "RelationshipNotFound",
    "NotARelationshipParty",
    "ConflictError",
    "UpstreamUnavailable",
    "InvariantViolation",
]
