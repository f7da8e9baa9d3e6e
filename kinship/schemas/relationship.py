from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RelationshipCreate(BaseModel):
    initiator_id: str = Field(min_length=1)
    recipient_id: str = Field(min_length=1)
    application_id: str | None = None


class WithdrawalRequest(BaseModel):
    reason: str = Field(default="", max_length=2000)


class EndSignal(BaseModel):
    party_id: str = Field(min_length=1)


class RequirementOut(BaseModel):
    id: str
    stage: str
    key: str
    title: str
    description: str = ""
    completion_mode: str
    metric: str | None = None
    current_value: int
    required_value: int
    party_a_signed: bool
    party_b_signed: bool
    is_completed: bool
    completed_at: datetime | None = None
    stale: bool = False

    class Config:
        from_attributes = True


class CoolingOffOut(BaseModel):
    requested_by: str
    reason: str
    started_at: datetime
    ends_at: datetime
    remaining_seconds: int
    countdown: str
    frozen_stage: str
    frozen_progress_percent: int
    end_confirmed: bool


class EventOut(BaseModel):
    id: str
    kind: str
    occurred_at: datetime
    payload: dict[str, Any] = {}

    class Config:
        from_attributes = True


class RelationshipStatus(BaseModel):
    relationship_id: str
    initiator_id: str
    recipient_id: str
    application_id: str | None = None
    status: str
    current_stage: str
    stage_display_name: str
    stage_order: int
    stage_started_at: datetime
    is_frozen: bool
    progress_percent: int
    frozen_at_progress_percent: int | None = None
    cooling_off: CoolingOffOut | None = None
    requirements: list[RequirementOut]
    features: list[str]
    stale: bool = False
    days_together: int
    next_stage_preview: list[str]
    created_at: datetime
    ended_at: datetime | None = None
    version: int


class RequirementList(BaseModel):
    relationship_id: str
    stage: str
    stale: bool = False
    requirements: list[RequirementOut]


class MutationResponse(BaseModel):
    ok: bool = True
    relationship: RelationshipStatus
    events: list[EventOut] = []


class SignOffResponse(MutationResponse):
    signing_status: str


class EndSignalResponse(MutationResponse):
    recorded: bool


class FeatureOut(BaseModel):
    key: str
    name: str
    description: str
    unlock_stage: str
    is_unlocked: bool
    unlock_message: str | None = None


class FeatureSet(BaseModel):
    relationship_id: str
    current_stage: str
    is_frozen: bool
    enabled: list[str]
    catalog: list[FeatureOut]


class StageOut(BaseModel):
    stage: str
    display_name: str
    order: int
    is_current: bool
    is_completed: bool


class StageDetail(BaseModel):
    stage: str
    stage_order: int
    title: str
    description: str
    is_locked: bool
    unlock_message: str | None = None
    preview_requirements: list[str]
