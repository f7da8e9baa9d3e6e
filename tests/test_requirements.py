import asyncio
from datetime import datetime, timezone

import pytest

from helpers import ALICE, BOB, requirement
from kinship.progression.metrics import InMemoryMetricsSource
from kinship.progression.requirements import RequirementEvaluator, build_requirements, progress_percent
from kinship.progression.stages import Stage
from kinship.progression.state import Attestation, Relationship, Snapshot

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _snapshot(stage=Stage.GETTING_TO_KNOW) -> Snapshot:
    rel = Relationship(
        id="rel-1",
        initiator_id=ALICE,
        recipient_id=BOB,
        current_stage=stage.value,
        stage_started_at=NOW,
        created_at=NOW,
        updated_at=NOW,
    )
    return Snapshot(relationship=rel, requirements=build_requirements(rel.id, stage))


@pytest.mark.parametrize("done,total,expected", [(0, 2, 0), (1, 2, 50), (1, 3, 33), (2, 3, 67), (3, 4, 75), (4, 4, 100)])
def test_progress_percent_rounds_to_integer(done, total, expected):
    reqs = build_requirements("rel-1", Stage.TRIAL_PERIOD)[:total]
    for r in reqs[:done]:
        r.is_completed = True
    assert progress_percent(reqs) == expected


def test_progress_percent_of_empty_stage_is_zero():
    assert progress_percent([]) == 0


def test_catalog_seeds_each_stage():
    assert [r.key for r in build_requirements("r", Stage.GETTING_TO_KNOW)] == ["active_days", "met_in_person"]
    trial = build_requirements("r", Stage.TRIAL_PERIOD)
    assert len(trial) == 4
    assert [r.completion_mode for r in trial] == ["automatic", "automatic", "automatic", "manual"]
    assert requirement(_snapshot(), "met_in_person").required_value == 2
    assert build_requirements("r", Stage.JOURNEY_COMPLETED) == []


def test_automatic_requirement_completes_at_threshold():
    snap = _snapshot()
    metrics = InMemoryMetricsSource()
    evaluator = RequirementEvaluator(metrics)

    metrics.set("rel-1", active_days=6)
    ev = asyncio.run(evaluator.evaluate(snap, NOW))
    active = requirement(snap, "active_days")
    assert active.current_value == 6
    assert not active.is_completed
    assert ev.newly_completed == []

    metrics.set("rel-1", active_days=7)
    ev = asyncio.run(evaluator.evaluate(snap, NOW))
    assert active.is_completed
    assert active.completed_at == NOW
    assert ev.newly_completed == [active.id]
    assert not ev.all_completed


def test_completed_requirement_never_reverts():
    snap = _snapshot()
    metrics = InMemoryMetricsSource()
    evaluator = RequirementEvaluator(metrics)

    metrics.set("rel-1", active_days=9)
    asyncio.run(evaluator.evaluate(snap, NOW))
    metrics.set("rel-1", active_days=2)
    ev = asyncio.run(evaluator.evaluate(snap, NOW))

    active = requirement(snap, "active_days")
    assert active.is_completed
    assert active.current_value == 9
    assert ev.newly_completed == []


def test_outage_serves_last_known_values_marked_stale():
    snap = _snapshot()
    metrics = InMemoryMetricsSource()
    evaluator = RequirementEvaluator(metrics)

    metrics.set("rel-1", active_days=4)
    asyncio.run(evaluator.evaluate(snap, NOW))

    metrics.available = False
    ev = asyncio.run(evaluator.evaluate(snap, NOW))
    active = requirement(snap, "active_days")
    manual = requirement(snap, "met_in_person")
    assert ev.stale
    assert active.stale and active.current_value == 4
    assert not manual.stale

    metrics.available = True
    ev = asyncio.run(evaluator.evaluate(snap, NOW))
    assert not ev.stale
    assert not active.stale


def test_manual_requirement_reads_the_ledger():
    snap = _snapshot()
    evaluator = RequirementEvaluator(InMemoryMetricsSource())
    met = requirement(snap, "met_in_person")

    snap.attestations.append(Attestation("rel-1", met.id, ALICE, NOW))
    asyncio.run(evaluator.evaluate(snap, NOW))
    assert met.party_a_signed and not met.party_b_signed
    assert met.current_value == 1
    assert not met.is_completed

    snap.attestations.append(Attestation("rel-1", met.id, BOB, NOW))
    ev = asyncio.run(evaluator.evaluate(snap, NOW))
    assert met.is_completed
    assert met.id in ev.newly_completed
