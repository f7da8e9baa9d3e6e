"""
Relationship stage progression for matched pairs.

This package decides which stage a relationship is in and what has to happen
before it can move on:
- Stage ladder (getting_to_know -> trial_period -> official_ceremony -> family_life -> journey_completed)
- Requirement evaluation from activity counters and dual sign-offs
- Withdrawal with a fixed cooling-off window, settled lazily on every read
- Feature unlocks derived from stage and freeze status
- Day-count milestones and journey statistics

Main entry point is `ProgressionEngine` in engine.py.
"""

from .engine import Outcome, ProgressionEngine, status_payload
from .errors import (
    ConflictError,
    InvariantViolation,
    NotARelationshipParty,
    ProgressionError,
    RelationshipNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from .features import resolve
from .feed import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from .metrics import ActivityMetrics, HttpMetricsSource, InMemoryMetricsSource, MetricsSource
from .stages import Stage
from .state import EventKind, RelationshipEvent, SigningStatus, Snapshot
from .store import MemoryRelationshipStore, RelationshipStore

__all__ = [
    # Service
    "ProgressionEngine",
    "Outcome",
    "status_payload",

    # Collaborators
    "RelationshipStore",
    "MemoryRelationshipStore",
    "MetricsSource",
    "HttpMetricsSource",
    "InMemoryMetricsSource",
    "ActivityMetrics",
    "ChangeFeed",
    "RedisChangeFeed",
    "InMemoryChangeFeed",

    # Domain
    "Stage",
    "EventKind",
    "RelationshipEvent",
    "SigningStatus",
    "Snapshot",
    "resolve",

    # Errors
    "ProgressionError",
    "ValidationError",
    "RelationshipNotFound",
    "NotARelationshipParty",
    "ConflictError",
    "UpstreamUnavailable",
    "InvariantViolation",
]
