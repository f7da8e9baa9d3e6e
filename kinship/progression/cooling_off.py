"""
Withdrawal and cooling-off.

A withdrawal freezes progress for a fixed reflection window. There is no timer
job behind it: every read settles the window lazily against `started_at`, so a
stale `is_frozen` flag is never trusted on its own.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import InvariantViolation, NotARelationshipParty, ValidationError
from .machine import current_progress
from .stages import is_terminal
from .state import (
    CoolingOffPeriod,
    EventKind,
    RelationshipEvent,
    RelationshipStatus,
    Resolution,
    Snapshot,
)

log = logging.getLogger("kinship-progression")

DEFAULT_DURATION_SECONDS = 24 * 3600


def format_countdown(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _check_consistent(snapshot: Snapshot) -> None:
    rel = snapshot.relationship
    active = snapshot.active_cooling_off
    if rel.is_frozen != (active is not None):
        raise InvariantViolation(
            "Frozen flag and cooling-off period disagree.",
            {"relationship_id": rel.id, "is_frozen": rel.is_frozen, "active_period": active is not None},
        )


def request_withdrawal(
    snapshot: Snapshot,
    party_id: str,
    reason: str,
    now: datetime,
    duration_seconds: int = DEFAULT_DURATION_SECONDS,
) -> RelationshipEvent:
    rel = snapshot.relationship
    if rel.role_of(party_id) is None:
        raise NotARelationshipParty(rel.id, party_id)
    if rel.is_ended:
        raise ValidationError("This relationship has ended.", {"relationship_id": rel.id})
    if is_terminal(rel.current_stage):
        raise ValidationError("This journey is already complete.", {"relationship_id": rel.id})

    _check_consistent(snapshot)
    if rel.is_frozen:
        period = snapshot.active_cooling_off
        raise ValidationError(
            "A cooling-off period is already in progress.",
            {"relationship_id": rel.id, "requested_by": period.requested_by, "ends_at": period.ends_at.isoformat()},
        )

    frozen_progress = current_progress(snapshot)
    reason = (reason or "").strip() or "No reason provided"

    period = CoolingOffPeriod(
        relationship_id=rel.id,
        requested_by=party_id,
        reason=reason,
        started_at=now,
        duration_seconds=duration_seconds,
        frozen_stage=rel.current_stage,
        frozen_progress_percent=frozen_progress,
    )
    if snapshot.cooling_off is not None:
        snapshot.superseded_periods.append(snapshot.cooling_off)
    snapshot.cooling_off = period

    rel.is_frozen = True
    rel.frozen_at_progress_percent = frozen_progress
    rel.progress_percent = frozen_progress
    rel.cooling_off_started_at = now
    rel.cooling_off_reason = reason
    rel.updated_at = now

    log.info(
        "[REL %s] WITHDRAWAL by=%s stage=%s progress=%d ends_at=%s",
        rel.id, party_id, rel.current_stage, frozen_progress, period.ends_at.isoformat(),
    )
    return RelationshipEvent(
        relationship_id=rel.id,
        kind=EventKind.WITHDRAWAL_STARTED.value,
        occurred_at=now,
        payload={
            "requested_by": party_id,
            "partner_id": rel.partner_of(party_id),
            "reason": reason,
            "frozen_stage": period.frozen_stage,
            "frozen_progress_percent": frozen_progress,
            "ends_at": period.ends_at.isoformat(),
        },
    )


def confirm_end(snapshot: Snapshot, party_id: str, now: datetime) -> bool:
    """
    Records that the withdrawing party followed through on ending. The window
    still runs to its end; it then resolves to relationship_ended instead of
    resuming. Returns False when the confirmation was already on record.
    """
    rel = snapshot.relationship
    if rel.role_of(party_id) is None:
        raise NotARelationshipParty(rel.id, party_id)
    _check_consistent(snapshot)

    period = snapshot.active_cooling_off
    if period is None:
        raise ValidationError("There is no cooling-off period in progress.", {"relationship_id": rel.id})
    if period.requested_by != party_id:
        raise ValidationError(
            "Only the party who asked to withdraw can confirm ending the relationship.",
            {"relationship_id": rel.id},
        )
    if period.end_confirmed_at is not None:
        return False

    period.end_confirmed_at = now
    log.info("[REL %s] end confirmed by=%s, resolves at %s", rel.id, party_id, period.ends_at.isoformat())
    return True


def settle(snapshot: Snapshot, now: datetime) -> Optional[RelationshipEvent]:
    """Resolves a lapsed cooling-off period. Idempotent; a no-op inside the window."""
    rel = snapshot.relationship
    _check_consistent(snapshot)

    period = snapshot.active_cooling_off
    if period is None or not period.has_lapsed(now):
        return None

    resolved_at = period.ends_at
    period.resolved_at = resolved_at
    rel.is_frozen = False
    rel.cooling_off_started_at = None
    rel.updated_at = now

    if period.end_confirmed_at is not None:
        period.resolution = Resolution.RELATIONSHIP_ENDED.value
        rel.status = RelationshipStatus.ENDED.value
        rel.ended_at = resolved_at
        rel.frozen_at_progress_percent = None
        log.info("[REL %s] cooling-off lapsed -> relationship ended", rel.id)
        return RelationshipEvent(
            relationship_id=rel.id,
            kind=EventKind.RELATIONSHIP_ENDED.value,
            occurred_at=now,
            payload={
                "requested_by": period.requested_by,
                "reason": period.reason,
                "stage": rel.current_stage,
                "ended_at": resolved_at.isoformat(),
            },
        )

    period.resolution = Resolution.RESUMED.value
    rel.progress_percent = period.frozen_progress_percent
    rel.frozen_at_progress_percent = None
    rel.cooling_off_reason = None
    log.info("[REL %s] cooling-off lapsed -> resumed at %d%%", rel.id, rel.progress_percent)
    return RelationshipEvent(
        relationship_id=rel.id,
        kind=EventKind.COOLING_OFF_RESUMED.value,
        occurred_at=now,
        payload={
            "stage": rel.current_stage,
            "progress_percent": rel.progress_percent,
            "resumed_at": resolved_at.isoformat(),
        },
    )


def cooling_off_status(snapshot: Snapshot, now: datetime) -> Optional[Dict[str, Any]]:
    period = snapshot.active_cooling_off
    if period is None:
        return None
    remaining = period.remaining_seconds(now)
    return {
        "requested_by": period.requested_by,
        "reason": period.reason,
        "started_at": period.started_at,
        "ends_at": period.ends_at,
        "remaining_seconds": remaining,
        "countdown": format_countdown(remaining),
        "frozen_stage": period.frozen_stage,
        "frozen_progress_percent": period.frozen_progress_percent,
        "end_confirmed": period.end_confirmed_at is not None,
    }
