"""
SQLAlchemy database models.

- base: Base declarative class
- relationship: relationships, stage requirements, attestations,
  cooling-off periods and the event outbox

Import any model from this module:
    from kinship.db.models import RelationshipState, StageRequirement
"""

# Base class (must be imported first)
from .base import Base

# Relationship progression models
from .relationship import (
    RelationshipState,
    StageRequirement,
    RequirementSignoff,
    CoolingOffWindow,
    RelationshipEventLog,
)

__all__ = [
    "Base",
    "RelationshipState",
    "StageRequirement",
    "RequirementSignoff",
    "CoolingOffWindow",
    "RelationshipEventLog",
]
