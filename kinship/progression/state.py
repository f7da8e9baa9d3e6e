"""
Explicit state objects for the progression engine.

The engine never mutates stored rows in place: it loads a `Snapshot`, works on a
copy, and hands the store the new snapshot together with the events the change
produced. Delivering those events is the caller's concern.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class CompletionMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RelationshipStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class Resolution(str, Enum):
    RESUMED = "resumed"
    RELATIONSHIP_ENDED = "relationship_ended"


class SigningStatus(str, Enum):
    WAITING_FOR_PARTNER = "waiting_for_partner"
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"


class EventKind(str, Enum):
    STAGE_TRANSITIONED = "stage_transitioned"
    JOURNEY_COMPLETED = "journey_completed"
    WITHDRAWAL_STARTED = "withdrawal_started"
    COOLING_OFF_RESUMED = "cooling_off_resumed"
    RELATIONSHIP_ENDED = "relationship_ended"
    MILESTONE_REACHED = "milestone_reached"


class PartyRole(str, Enum):
    INITIATOR = "initiator"   # younger party, party A
    RECIPIENT = "recipient"   # older party, party B


@dataclass
class Relationship:
    id: str
    initiator_id: str
    recipient_id: str
    current_stage: str
    stage_started_at: datetime
    created_at: datetime
    updated_at: datetime
    application_id: Optional[str] = None
    status: str = RelationshipStatus.ACTIVE.value
    is_frozen: bool = False
    frozen_at_progress_percent: Optional[int] = None
    cooling_off_started_at: Optional[datetime] = None
    cooling_off_reason: Optional[str] = None
    progress_percent: int = 0
    last_milestone_days: int = 0
    version: int = 0
    ended_at: Optional[datetime] = None

    @property
    def is_ended(self) -> bool:
        return self.status == RelationshipStatus.ENDED.value

    def role_of(self, party_id: str) -> Optional[PartyRole]:
        if party_id == self.initiator_id:
            return PartyRole.INITIATOR
        if party_id == self.recipient_id:
            return PartyRole.RECIPIENT
        return None

    def partner_of(self, party_id: str) -> Optional[str]:
        if party_id == self.initiator_id:
            return self.recipient_id
        if party_id == self.recipient_id:
            return self.initiator_id
        return None


@dataclass
class Requirement:
    id: str
    relationship_id: str
    stage: str
    key: str
    title: str
    completion_mode: str
    position: int = 0
    description: str = ""
    metric: Optional[str] = None
    current_value: int = 0
    required_value: int = 1
    party_a_signed: bool = False
    party_b_signed: bool = False
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    # last-known value served because the metrics source was unreachable
    stale: bool = field(default=False, compare=False)

    @property
    def is_manual(self) -> bool:
        return self.completion_mode == CompletionMode.MANUAL.value


@dataclass
class Attestation:
    relationship_id: str
    requirement_id: str
    party_id: str
    signed_at: datetime
    id: str = field(default_factory=new_id)


@dataclass
class CoolingOffPeriod:
    relationship_id: str
    requested_by: str
    reason: str
    started_at: datetime
    duration_seconds: int
    frozen_stage: str
    frozen_progress_percent: int
    id: str = field(default_factory=new_id)
    end_confirmed_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def ends_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_seconds)

    @property
    def is_active(self) -> bool:
        return self.resolution is None

    def has_lapsed(self, now: datetime) -> bool:
        return now >= self.ends_at

    def remaining_seconds(self, now: datetime) -> int:
        if not self.is_active:
            return 0
        return max(0, int((self.ends_at - now).total_seconds()))


@dataclass
class RelationshipEvent:
    relationship_id: str
    kind: str
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)


@dataclass
class Snapshot:
    relationship: Relationship
    requirements: List[Requirement] = field(default_factory=list)
    attestations: List[Attestation] = field(default_factory=list)
    cooling_off: Optional[CoolingOffPeriod] = None
    # attestations written by the current mutation, not yet persisted
    new_attestations: List[Attestation] = field(default_factory=list)
    # earlier period displaced from `cooling_off` by this mutation, written back with it
    superseded_periods: List[CoolingOffPeriod] = field(default_factory=list)

    def copy(self) -> "Snapshot":
        return copy.deepcopy(self)

    @property
    def active_cooling_off(self) -> Optional[CoolingOffPeriod]:
        if self.cooling_off is not None and self.cooling_off.is_active:
            return self.cooling_off
        return None

    def requirements_for(self, stage) -> List[Requirement]:
        stage = getattr(stage, "value", stage)
        rows = [r for r in self.requirements if r.stage == stage]
        return sorted(rows, key=lambda r: r.position)

    def current_requirements(self) -> List[Requirement]:
        return self.requirements_for(self.relationship.current_stage)

    def find_requirement(self, requirement_id: str) -> Optional[Requirement]:
        for r in self.requirements:
            if r.id == requirement_id:
                return r
        return None

    def has_attestation(self, requirement_id: str, party_id: str) -> bool:
        return any(
            a.requirement_id == requirement_id and a.party_id == party_id
            for a in self.attestations + self.new_attestations
        )
