"""
Stage state machine.

getting_to_know -> trial_period -> official_ceremony -> family_life -> journey_completed

Advancement is computed, never requested: the relationship moves exactly one stage
forward once every requirement registered for its current stage is complete and
it is not frozen.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import InvariantViolation
from .features import newly_unlocked
from .requirements import build_requirements, progress_percent
from .stages import Stage, display_name, is_terminal, next_stage, stage_index
from .state import EventKind, RelationshipEvent, Snapshot

log = logging.getLogger("kinship-progression")


def current_progress(snapshot: Snapshot) -> int:
    """Progress within the stage; held at the freeze snapshot while frozen."""
    rel = snapshot.relationship
    if rel.is_frozen and rel.frozen_at_progress_percent is not None:
        return rel.frozen_at_progress_percent
    if is_terminal(rel.current_stage):
        return 100
    return progress_percent(snapshot.current_requirements())


def refresh_progress(snapshot: Snapshot) -> int:
    rel = snapshot.relationship
    if not rel.is_frozen:
        rel.progress_percent = current_progress(snapshot)
    return rel.progress_percent


def can_advance(snapshot: Snapshot) -> bool:
    rel = snapshot.relationship
    if rel.is_ended or rel.is_frozen or is_terminal(rel.current_stage):
        return False
    reqs = snapshot.current_requirements()
    return bool(reqs) and all(r.is_completed for r in reqs)


def advance(snapshot: Snapshot, now: datetime, journey_stats: Optional[Dict[str, Any]] = None) -> RelationshipEvent:
    """
    Moves the relationship one stage forward and seeds the next stage's
    requirement set. Returns the transition event: `journey_completed` when the
    family_life set is finished, `stage_transitioned` otherwise.
    """
    rel = snapshot.relationship
    if not can_advance(snapshot):
        raise InvariantViolation(
            "Advancement attempted while requirements are open or progress is frozen.",
            {"relationship_id": rel.id, "stage": rel.current_stage, "is_frozen": rel.is_frozen},
        )

    from_stage = Stage(rel.current_stage)
    to_stage = next_stage(from_stage)
    completed = len(snapshot.current_requirements())

    rel.current_stage = to_stage.value
    rel.stage_started_at = now
    rel.updated_at = now
    if not snapshot.requirements_for(to_stage):
        snapshot.requirements.extend(build_requirements(rel.id, to_stage))
    rel.progress_percent = current_progress(snapshot)

    log.info(
        "[REL %s] STAGE %s -> %s (requirements=%d)",
        rel.id, from_stage.value, to_stage.value, completed,
    )

    if is_terminal(to_stage):
        return RelationshipEvent(
            relationship_id=rel.id,
            kind=EventKind.JOURNEY_COMPLETED.value,
            occurred_at=now,
            payload={
                "completed_stage": from_stage.value,
                "completed_stage_name": display_name(from_stage),
                "stats": journey_stats or {},
            },
        )

    return RelationshipEvent(
        relationship_id=rel.id,
        kind=EventKind.STAGE_TRANSITIONED.value,
        occurred_at=now,
        payload={
            "from_stage": from_stage.value,
            "from_stage_name": display_name(from_stage),
            "to_stage": to_stage.value,
            "to_stage_name": display_name(to_stage),
            "stage_order": stage_index(to_stage) + 1,
            "completed_requirements": completed,
            "newly_unlocked_features": newly_unlocked(from_stage, to_stage),
        },
    )


def assert_forward_only(before: Snapshot, after: Snapshot) -> None:
    b, a = before.relationship, after.relationship
    if stage_index(a.current_stage) < stage_index(b.current_stage):
        raise InvariantViolation(
            "Stage would regress.",
            {"relationship_id": b.id, "from": b.current_stage, "to": a.current_stage},
        )
    if b.is_frozen and a.is_frozen and a.current_stage != b.current_stage:
        raise InvariantViolation(
            "Stage changed while progress was frozen.",
            {"relationship_id": b.id, "from": b.current_stage, "to": a.current_stage},
        )
    if b.is_ended and not a.is_ended:
        raise InvariantViolation("Ended relationship was reopened.", {"relationship_id": b.id})
    for old in before.requirements:
        new = after.find_requirement(old.id)
        if old.is_completed and (new is None or not new.is_completed):
            raise InvariantViolation(
                "Completed requirement would revert.",
                {"relationship_id": b.id, "requirement_id": old.id},
            )

