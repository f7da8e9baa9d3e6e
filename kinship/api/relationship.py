from fastapi import APIRouter, Depends, Query

from kinship.progression.engine import Outcome, ProgressionEngine, requirement_payload, status_payload
from kinship.schemas.relationship import (
    EndSignal,
    EndSignalResponse,
    FeatureSet,
    MutationResponse,
    RelationshipCreate,
    RelationshipStatus,
    RequirementList,
    SignOffResponse,
    StageDetail,
    StageOut,
    WithdrawalRequest,
)
from kinship.utils.deps import get_current_party_id, get_engine, require_internal_token

router = APIRouter(prefix="/relationships", tags=["relationships"])


def _events(outcome: Outcome) -> list[dict]:
    return [
        {"id": ev.id, "kind": ev.kind, "occurred_at": ev.occurred_at, "payload": ev.payload}
        for ev in outcome.events
    ]


def _mutation(engine: ProgressionEngine, outcome: Outcome, **extra) -> dict:
    return {
        "ok": True,
        "relationship": engine.status(outcome),
        "events": _events(outcome),
        **extra,
    }


@router.post("", response_model=RelationshipStatus, dependencies=[Depends(require_internal_token)])
async def open_relationship(
    body: RelationshipCreate,
    engine: ProgressionEngine = Depends(get_engine),
):
    """Called by the application-approval process once a match is approved."""
    snapshot = await engine.open_relationship(body.initiator_id, body.recipient_id, body.application_id)
    return status_payload(snapshot, engine.clock())


@router.get("/{relationship_id}", response_model=RelationshipStatus)
async def get_relationship(
    relationship_id: str,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    """
    Current stage, progress, requirement checklist and unlocked features.

    A lapsed cooling-off is settled before answering, so `is_frozen` is never
    reported past the end of the window.
    """
    outcome = await engine.get_status(relationship_id, party_id)
    return engine.status(outcome)


@router.get("/{relationship_id}/requirements", response_model=RequirementList)
async def get_requirements(
    relationship_id: str,
    stage: str | None = Query(default=None),
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    outcome = await engine.evaluate(relationship_id, stage=stage, party_id=party_id)
    return {
        "relationship_id": relationship_id,
        "stage": stage or outcome.snapshot.relationship.current_stage,
        "stale": outcome.stale,
        "requirements": [requirement_payload(r) for r in outcome.result],
    }


@router.post("/{relationship_id}/refresh", response_model=MutationResponse)
async def refresh_relationship(
    relationship_id: str,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    outcome = await engine.refresh(relationship_id, party_id)
    return _mutation(engine, outcome)


@router.post("/{relationship_id}/requirements/{requirement_id}/sign-off", response_model=SignOffResponse)
async def sign_off_requirement(
    relationship_id: str,
    requirement_id: str,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    outcome = await engine.sign_off(relationship_id, requirement_id, party_id)
    return _mutation(engine, outcome, signing_status=outcome.signing_status.value)


@router.post("/{relationship_id}/withdrawal", response_model=MutationResponse)
async def request_withdrawal(
    relationship_id: str,
    body: WithdrawalRequest,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    outcome = await engine.request_withdrawal(relationship_id, party_id, body.reason)
    return _mutation(engine, outcome)


@router.post(
    "/{relationship_id}/end",
    response_model=EndSignalResponse,
    dependencies=[Depends(require_internal_token)],
)
async def confirm_end(
    relationship_id: str,
    body: EndSignal,
    engine: ProgressionEngine = Depends(get_engine),
):
    outcome = await engine.confirm_end(relationship_id, body.party_id)
    return _mutation(engine, outcome, recorded=bool(outcome.result))


@router.get("/{relationship_id}/features", response_model=FeatureSet)
async def get_features(
    relationship_id: str,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    return await engine.features(relationship_id, party_id)


@router.get("/{relationship_id}/stages", response_model=list[StageOut])
async def get_stages(
    relationship_id: str,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    return await engine.stages(relationship_id, party_id)


@router.get("/{relationship_id}/stages/{stage}", response_model=StageDetail)
async def get_stage_detail(
    relationship_id: str,
    stage: str,
    engine: ProgressionEngine = Depends(get_engine),
    party_id: str = Depends(get_current_party_id),
):
    return await engine.stage_detail(relationship_id, stage, party_id)
