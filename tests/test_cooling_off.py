from datetime import datetime, timedelta, timezone

import pytest

from helpers import ALICE, BOB, STRANGER
from kinship.progression.cooling_off import (
    cooling_off_status,
    format_countdown,
    request_withdrawal,
    settle,
)
from kinship.progression.errors import InvariantViolation, NotARelationshipParty
from kinship.progression.machine import assert_forward_only
from kinship.progression.milestones import days_together, milestone_message
from kinship.progression.requirements import build_requirements
from kinship.progression.stages import Stage
from kinship.progression.state import Relationship, Snapshot

NOW = datetime(2026, 3, 2, 22, 30, tzinfo=timezone.utc)


def _snapshot(stage=Stage.TRIAL_PERIOD) -> Snapshot:
    rel = Relationship(
        id="rel-1",
        initiator_id=ALICE,
        recipient_id=BOB,
        current_stage=stage.value,
        stage_started_at=NOW,
        created_at=NOW,
        updated_at=NOW,
    )
    snap = Snapshot(relationship=rel, requirements=build_requirements(rel.id, stage))
    snap.requirements[0].is_completed = True
    rel.progress_percent = 25
    return snap


@pytest.mark.parametrize("seconds,expected", [
    (86400, "24:00:00"),
    (3661, "01:01:01"),
    (59, "00:00:59"),
    (0, "00:00:00"),
    (-5, "00:00:00"),
])
def test_format_countdown(seconds, expected):
    assert format_countdown(seconds) == expected


def test_withdrawal_snapshots_progress_and_settles_lazily():
    snap = _snapshot()
    event = request_withdrawal(snap, ALICE, "  ", NOW, duration_seconds=3600)
    assert event.kind == "withdrawal_started"
    assert snap.relationship.frozen_at_progress_percent == 25
    assert snap.cooling_off.reason == "No reason provided"

    # evaluation results arriving during the window do not move the frozen value
    snap.requirements[1].is_completed = True
    status = cooling_off_status(snap, NOW + timedelta(minutes=30))
    assert status["remaining_seconds"] == 1800
    assert settle(snap, NOW + timedelta(minutes=59)) is None

    event = settle(snap, NOW + timedelta(hours=1))
    assert event.kind == "cooling_off_resumed"
    assert snap.relationship.progress_percent == 25
    assert snap.cooling_off.resolution == "resumed"
    assert settle(snap, NOW + timedelta(hours=2)) is None


def test_withdrawal_by_stranger_is_rejected():
    with pytest.raises(NotARelationshipParty):
        request_withdrawal(_snapshot(), STRANGER, "", NOW)


def test_inconsistent_freeze_flag_is_an_invariant_violation():
    snap = _snapshot()
    snap.relationship.is_frozen = True
    with pytest.raises(InvariantViolation):
        settle(snap, NOW)


def test_forward_only_guard():
    before = _snapshot(Stage.OFFICIAL_CEREMONY)
    after = before.copy()
    after.relationship.current_stage = Stage.TRIAL_PERIOD.value
    with pytest.raises(InvariantViolation):
        assert_forward_only(before, after)

    reverted = before.copy()
    reverted.requirements[0].is_completed = False
    with pytest.raises(InvariantViolation):
        assert_forward_only(before, reverted)


def test_days_together_counts_calendar_days():
    # 22:30 to 00:10 the next day is one calendar day
    assert days_together(NOW, NOW + timedelta(hours=1, minutes=40)) == 1
    assert days_together(NOW, NOW - timedelta(days=3)) == 0
    assert days_together(None, NOW) == 0


def test_milestone_messages():
    assert milestone_message(7).endswith("Your first week milestone!")
    assert milestone_message(365).endswith("A full year of wonderful connection!")
    assert milestone_message(3) == "You've been together for 3 days!"


def test_withdrawal_event_names_the_partner():
    snap = _snapshot()
    ev = request_withdrawal(snap, BOB, "need space", NOW, 86400)
    assert ev.payload["requested_by"] == BOB
    assert ev.payload["partner_id"] == ALICE
    assert snap.relationship.partner_of(ALICE) == BOB
    assert snap.relationship.partner_of(STRANGER) is None
