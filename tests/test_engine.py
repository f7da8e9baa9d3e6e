import asyncio

import pytest

from helpers import ALICE, BOB, PLENTY, STRANGER, complete_current_stage, open_pair, requirement
from kinship.progression.engine import ProgressionEngine
from kinship.progression.errors import (
    ConflictError,
    NotARelationshipParty,
    RelationshipNotFound,
    ValidationError,
)
from kinship.progression.state import SigningStatus
from kinship.progression.store import MemoryRelationshipStore


class FlakyStore(MemoryRelationshipStore):
    """Loses the first `conflicts` commits as if another writer got there first."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.commit_calls = 0

    async def commit(self, snapshot, expected_version, events):
        self.commit_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictError("lost the race", {"relationship_id": snapshot.relationship.id})
        return await super().commit(snapshot, expected_version, events)


def _kinds(events):
    return [ev.kind for ev in events]


def test_open_relationship_seeds_first_stage(engine, feed):
    async def scenario():
        rel_id = await open_pair(engine)
        outcome = await engine.get_status(rel_id, ALICE)
        status = engine.status(outcome)
        assert status["current_stage"] == "getting_to_know"
        assert status["stage_display_name"] == "Getting Acquainted"
        assert status["progress_percent"] == 0
        assert [r["key"] for r in status["requirements"]] == ["active_days", "met_in_person"]
        assert "text" in status["features"]
        assert status["cooling_off"] is None
        assert (rel_id, "opened") in feed.published

    asyncio.run(scenario())


def test_open_relationship_needs_two_parties(engine):
    with pytest.raises(ValidationError):
        asyncio.run(engine.open_relationship(ALICE, ALICE))


def test_unknown_relationship_and_strangers_are_rejected(engine):
    async def scenario():
        with pytest.raises(RelationshipNotFound):
            await engine.get_status("missing")
        rel_id = await open_pair(engine)
        with pytest.raises(NotARelationshipParty):
            await engine.get_status(rel_id, STRANGER)

    asyncio.run(scenario())


def test_advances_only_when_every_requirement_is_met(engine, metrics, store):
    async def scenario():
        rel_id = await open_pair(engine)

        metrics.set(rel_id, active_days=6)
        outcome = await engine.refresh(rel_id)
        assert outcome.snapshot.relationship.current_stage == "getting_to_know"

        met = requirement(outcome.snapshot, "met_in_person")
        await engine.sign_off(rel_id, met.id, ALICE)
        outcome = await engine.sign_off(rel_id, met.id, BOB)
        assert outcome.signing_status == SigningStatus.COMPLETED
        assert outcome.snapshot.relationship.current_stage == "getting_to_know"
        assert outcome.snapshot.relationship.progress_percent == 50
        assert outcome.events == []

        metrics.set(rel_id, active_days=7)
        outcome = await engine.refresh(rel_id)
        assert outcome.snapshot.relationship.current_stage == "trial_period"
        assert _kinds(outcome.events) == ["stage_transitioned"]
        payload = outcome.events[0].payload
        assert payload["from_stage"] == "getting_to_know"
        assert payload["to_stage"] == "trial_period"
        assert payload["newly_unlocked_features"] == ["video_call", "voice_call", "diary", "scheduling"]

        trial = outcome.snapshot.requirements_for("trial_period")
        assert len(trial) == 4
        assert outcome.snapshot.relationship.progress_percent == 0

    asyncio.run(scenario())


def test_never_skips_a_stage(engine, metrics):
    async def scenario():
        rel_id = await open_pair(engine)
        metrics.set(rel_id, **PLENTY)

        outcome = await complete_current_stage(engine, metrics, rel_id)
        assert outcome.snapshot.relationship.current_stage == "trial_period"

        # every automatic trial requirement is already met, the manual one is not
        outcome = await engine.refresh(rel_id)
        assert outcome.snapshot.relationship.current_stage == "trial_period"
        assert outcome.snapshot.relationship.progress_percent == 75

    asyncio.run(scenario())


def test_trial_period_last_sign_off_transitions_once(engine, metrics, store):
    async def scenario():
        rel_id = await open_pair(engine)
        await complete_current_stage(engine, metrics, rel_id)
        outcome = await engine.refresh(rel_id)
        assert outcome.snapshot.relationship.progress_percent == 75

        trust = requirement(outcome.snapshot, "trust_exercise")
        first = await engine.sign_off(rel_id, trust.id, ALICE)
        assert first.signing_status == SigningStatus.WAITING_FOR_PARTNER
        assert first.snapshot.relationship.current_stage == "trial_period"

        second = await engine.sign_off(rel_id, trust.id, BOB)
        assert second.signing_status == SigningStatus.COMPLETED
        assert second.snapshot.relationship.current_stage == "official_ceremony"
        assert _kinds(second.events) == ["stage_transitioned"]

        # a retry after the stage moved on is a no-op
        retry = await engine.sign_off(rel_id, trust.id, BOB)
        assert retry.signing_status == SigningStatus.ALREADY_COMPLETED
        assert retry.events == []
        assert retry.snapshot.relationship.version == second.snapshot.relationship.version
        assert len([a for a in retry.snapshot.attestations if a.requirement_id == trust.id]) == 2

        # something this party never signed is still rejected once its stage is over
        diary = requirement(second.snapshot, "shared_diary", "trial_period")
        with pytest.raises(ValidationError):
            await engine.sign_off(rel_id, diary.id, BOB)
        await engine.refresh(rel_id)

        transitions = [
            ev for ev in store.events
            if ev.kind == "stage_transitioned" and ev.payload["to_stage"] == "official_ceremony"
        ]
        assert len(transitions) == 1

    asyncio.run(scenario())


def test_duplicate_sign_off_writes_nothing(engine, store):
    async def scenario():
        rel_id = await open_pair(engine)
        snap = (await engine.get_status(rel_id)).snapshot
        met = requirement(snap, "met_in_person")

        first = await engine.sign_off(rel_id, met.id, ALICE)
        again = await engine.sign_off(rel_id, met.id, ALICE)
        assert again.signing_status == SigningStatus.WAITING_FOR_PARTNER
        assert again.snapshot.relationship.version == first.snapshot.relationship.version
        assert len([a for a in again.snapshot.attestations if a.requirement_id == met.id]) == 1

    asyncio.run(scenario())


def test_concurrent_sign_offs_transition_exactly_once(engine, metrics, store):
    async def scenario():
        rel_id = await open_pair(engine)
        metrics.set(rel_id, active_days=7)
        outcome = await engine.refresh(rel_id)
        met = requirement(outcome.snapshot, "met_in_person")

        a, b = await asyncio.gather(
            engine.sign_off(rel_id, met.id, ALICE),
            engine.sign_off(rel_id, met.id, BOB),
        )
        statuses = {a.signing_status, b.signing_status}
        assert statuses == {SigningStatus.WAITING_FOR_PARTNER, SigningStatus.COMPLETED}

        final = await engine.get_status(rel_id)
        assert final.snapshot.relationship.current_stage == "trial_period"
        assert _kinds(store.events).count("stage_transitioned") == 1

    asyncio.run(scenario())


def test_sign_off_racing_withdrawal_commits_one_order(engine, metrics, store):
    async def scenario():
        rel_id = await open_pair(engine)
        metrics.set(rel_id, active_days=7)
        outcome = await engine.refresh(rel_id)
        met = requirement(outcome.snapshot, "met_in_person")
        await engine.sign_off(rel_id, met.id, ALICE)
        before = (await engine.get_status(rel_id)).snapshot.relationship.version
        logged = len(store.events)

        signed, withdrawn = await asyncio.gather(
            engine.sign_off(rel_id, met.id, BOB),
            engine.request_withdrawal(rel_id, ALICE, "second thoughts"),
            return_exceptions=True,
        )
        assert withdrawn.snapshot.relationship.is_frozen

        final = (await engine.get_status(rel_id)).snapshot
        kinds = _kinds(store.events[logged:])
        assert final.relationship.is_frozen
        assert final.active_cooling_off.requested_by == ALICE

        if isinstance(signed, ValidationError):
            # withdrawal landed first; the sign-off re-read a frozen relationship
            assert kinds == ["withdrawal_started"]
            assert final.relationship.current_stage == "getting_to_know"
            assert not requirement(final, "met_in_person").is_completed
            assert final.relationship.version == before + 1
        else:
            assert signed.signing_status == SigningStatus.COMPLETED
            assert kinds == ["stage_transitioned", "withdrawal_started"]
            assert final.relationship.current_stage == "trial_period"
            assert final.active_cooling_off.frozen_stage == "trial_period"
            assert final.relationship.version == before + 2

    asyncio.run(scenario())


def test_concurrent_sign_offs_on_different_requirements(engine, metrics, store):
    async def scenario():
        rel_id = await open_pair(engine)
        await complete_current_stage(engine, metrics, rel_id)
        await complete_current_stage(engine, metrics, rel_id)
        outcome = await engine.refresh(rel_id)
        assert outcome.snapshot.relationship.current_stage == "official_ceremony"

        meetup = requirement(outcome.snapshot, "offline_meetup")
        tasks = requirement(outcome.snapshot, "weekly_tasks")
        await engine.sign_off(rel_id, meetup.id, ALICE)
        await engine.sign_off(rel_id, tasks.id, ALICE)

        a, b = await asyncio.gather(
            engine.sign_off(rel_id, meetup.id, BOB),
            engine.sign_off(rel_id, tasks.id, BOB),
        )
        assert a.signing_status == SigningStatus.COMPLETED
        assert b.signing_status == SigningStatus.COMPLETED

        final = (await engine.get_status(rel_id)).snapshot
        assert final.relationship.current_stage == "family_life"
        assert requirement(final, "offline_meetup", "official_ceremony").is_completed
        assert requirement(final, "weekly_tasks", "official_ceremony").is_completed
        assert {att.requirement_id for att in final.attestations if att.party_id == BOB} >= {meetup.id, tasks.id}
        into_family = [
            ev for ev in store.events
            if ev.kind == "stage_transitioned" and ev.payload["to_stage"] == "family_life"
        ]
        assert len(into_family) == 1

    asyncio.run(scenario())


def test_conflict_is_retried_from_a_fresh_read(metrics, feed, clock):
    store = FlakyStore(conflicts=2)
    engine = ProgressionEngine(store, metrics, feed=feed, clock=clock, retry_delay=0)

    async def scenario():
        rel_id = await open_pair(engine)
        outcome = await engine.request_withdrawal(rel_id, ALICE, "need a break")
        assert outcome.snapshot.relationship.is_frozen
        assert store.commit_calls == 3
        assert _kinds(store.events) == ["withdrawal_started"]

    asyncio.run(scenario())


def test_conflict_gives_up_after_retry_budget(metrics, clock):
    store = FlakyStore(conflicts=10)
    engine = ProgressionEngine(store, metrics, clock=clock, retry_count=3, retry_delay=0)

    async def scenario():
        rel_id = await open_pair(engine)
        with pytest.raises(ConflictError):
            await engine.request_withdrawal(rel_id, ALICE, "")
        assert store.commit_calls == 3
        assert store.events == []

    asyncio.run(scenario())


def test_second_withdrawal_is_rejected(engine):
    async def scenario():
        rel_id = await open_pair(engine)
        await engine.request_withdrawal(rel_id, ALICE, "too fast")
        with pytest.raises(ValidationError):
            await engine.request_withdrawal(rel_id, ALICE, "again")
        # the other party cannot stack a window on top either
        with pytest.raises(ValidationError):
            await engine.request_withdrawal(rel_id, BOB, "me too")

    asyncio.run(scenario())


def test_cooling_off_freezes_then_resumes_at_snapshot(engine, metrics, store, clock):
    async def scenario():
        rel_id = await open_pair(engine)
        metrics.set(rel_id, active_days=7)
        await engine.refresh(rel_id)

        outcome = await engine.request_withdrawal(rel_id, BOB, "")
        rel = outcome.snapshot.relationship
        assert rel.is_frozen
        assert rel.frozen_at_progress_percent == 50
        assert rel.cooling_off_reason == "No reason provided"
        assert outcome.events[0].payload["partner_id"] == ALICE

        status = engine.status(await engine.get_status(rel_id))
        assert status["features"] == ["advisor_chat"]
        assert status["cooling_off"]["countdown"] == "24:00:00"

        met = requirement(outcome.snapshot, "met_in_person")
        with pytest.raises(ValidationError):
            await engine.sign_off(rel_id, met.id, ALICE)

        # evaluation still runs but changes nothing while frozen
        before = (await engine.get_status(rel_id)).snapshot.relationship.version
        frozen_eval = await engine.refresh(rel_id)
        assert frozen_eval.snapshot.relationship.version == before
        assert frozen_eval.snapshot.relationship.progress_percent == 50

        clock.advance(hours=23, minutes=59, seconds=59)
        status = engine.status(await engine.get_status(rel_id))
        assert status["is_frozen"] is True
        assert status["cooling_off"]["countdown"] == "00:00:01"

        clock.advance(seconds=1)
        resumed = await engine.get_status(rel_id)
        assert _kinds(resumed.events) == ["cooling_off_resumed"]
        status = engine.status(resumed)
        assert status["is_frozen"] is False
        assert status["progress_percent"] == 50
        assert status["cooling_off"] is None
        assert "text" in status["features"]

        again = await engine.get_status(rel_id)
        assert again.events == []
        assert _kinds(store.events).count("cooling_off_resumed") == 1

    asyncio.run(scenario())


def test_end_signal_ends_relationship_when_window_lapses(engine, store, clock):
    async def scenario():
        rel_id = await open_pair(engine)
        await engine.request_withdrawal(rel_id, ALICE, "not the right fit")

        with pytest.raises(ValidationError):
            await engine.confirm_end(rel_id, BOB)
        assert (await engine.confirm_end(rel_id, ALICE)).result is True
        assert (await engine.confirm_end(rel_id, ALICE)).result is False

        clock.advance(hours=24)
        outcome = await engine.get_status(rel_id)
        assert _kinds(outcome.events) == ["relationship_ended"]
        rel = outcome.snapshot.relationship
        assert rel.is_ended and not rel.is_frozen

        features = await engine.features(rel_id)
        assert features["enabled"] == []
        assert not any(f["is_unlocked"] for f in features["catalog"])

        met = requirement(outcome.snapshot, "met_in_person")
        with pytest.raises(ValidationError):
            await engine.sign_off(rel_id, met.id, BOB)
        with pytest.raises(ValidationError):
            await engine.request_withdrawal(rel_id, BOB, "")
        assert _kinds(store.events).count("relationship_ended") == 1

    asyncio.run(scenario())


def test_end_signal_needs_an_active_window(engine):
    async def scenario():
        rel_id = await open_pair(engine)
        with pytest.raises(ValidationError):
            await engine.confirm_end(rel_id, ALICE)

    asyncio.run(scenario())


def test_withdrawal_after_unsettled_lapse_settles_first(engine, store, clock):
    async def scenario():
        rel_id = await open_pair(engine)
        await engine.request_withdrawal(rel_id, ALICE, "")
        clock.advance(hours=30)

        outcome = await engine.request_withdrawal(rel_id, BOB, "second thoughts")
        assert _kinds(outcome.events) == ["cooling_off_resumed", "withdrawal_started"]
        period = outcome.snapshot.cooling_off
        assert period.requested_by == BOB
        assert period.is_active

        assert (await engine.get_status(rel_id)).snapshot.relationship.is_frozen

    asyncio.run(scenario())


def test_sweep_settles_lapsed_windows(engine, clock):
    async def scenario():
        rel_id = await open_pair(engine)
        other_id = await open_pair(engine)
        await engine.request_withdrawal(rel_id, ALICE, "")

        assert await engine.settle_due() == 0
        clock.advance(hours=25)
        assert await engine.settle_due() == 1
        assert await engine.settle_due() == 0
        assert not (await engine.get_status(rel_id)).snapshot.relationship.is_frozen
        assert not (await engine.get_status(other_id)).snapshot.relationship.is_frozen

    asyncio.run(scenario())


def test_outage_marks_requirements_stale(engine, metrics):
    async def scenario():
        rel_id = await open_pair(engine)
        metrics.set(rel_id, active_days=3)
        await engine.refresh(rel_id)

        metrics.available = False
        outcome = await engine.refresh(rel_id)
        assert outcome.stale
        status = engine.status(outcome)
        active = next(r for r in status["requirements"] if r["key"] == "active_days")
        assert active["stale"] is True
        assert active["current_value"] == 3
        assert status["current_stage"] == "getting_to_know"

    asyncio.run(scenario())


def test_evaluate_other_stages_reads_without_writing(engine):
    async def scenario():
        rel_id = await open_pair(engine)
        outcome = await engine.evaluate(rel_id, stage="family_life")
        assert [r.key for r in outcome.result] == ["home_visits", "official_ceremony_held", "adoption_certificate"]
        assert outcome.events == []
        assert outcome.snapshot.requirements_for("family_life") == []

        with pytest.raises(ValidationError):
            await engine.evaluate(rel_id, stage="honeymoon")

    asyncio.run(scenario())


def test_milestones_fire_once_for_each_threshold_crossed(engine, store, clock):
    async def scenario():
        rel_id = await open_pair(engine)
        clock.advance(days=8)
        outcome = await engine.get_status(rel_id)
        assert _kinds(outcome.events) == ["milestone_reached"]
        assert outcome.events[0].payload["days"] == 7
        assert (await engine.get_status(rel_id)).events == []

        # nobody read the relationship between day 8 and day 40
        clock.advance(days=32)
        outcome = await engine.get_status(rel_id)
        assert [ev.payload["days"] for ev in outcome.events] == [14, 30]
        assert outcome.snapshot.relationship.last_milestone_days == 30
        assert (await engine.get_status(rel_id)).events == []

        reached = [ev.payload["days"] for ev in store.events if ev.kind == "milestone_reached"]
        assert reached == [7, 14, 30]

    asyncio.run(scenario())


def test_journey_completes_with_stats(engine, metrics, store):
    async def scenario():
        rel_id = await open_pair(engine)
        seen = []
        for _ in range(4):
            outcome = await complete_current_stage(engine, metrics, rel_id)
            seen.append(outcome.snapshot.relationship.current_stage)
        assert seen == ["trial_period", "official_ceremony", "family_life", "journey_completed"]

        assert _kinds(outcome.events) == ["journey_completed"]
        stats = outcome.events[0].payload["stats"]
        assert stats["video_calls"] == PLENTY["video_calls"]
        assert stats["home_visits"] == PLENTY["home_visits"]
        assert outcome.snapshot.relationship.progress_percent == 100
        assert _kinds(store.events).count("stage_transitioned") == 3

        with pytest.raises(ValidationError):
            await engine.request_withdrawal(rel_id, ALICE, "")
        stages = await engine.stages(rel_id)
        assert all(s["is_completed"] for s in stages)

    asyncio.run(scenario())


def test_journey_stats_survive_metrics_outage(engine, metrics):
    async def scenario():
        rel_id = await open_pair(engine)
        for _ in range(3):
            await complete_current_stage(engine, metrics, rel_id)

        metrics.set(rel_id, **PLENTY)
        outcome = await engine.refresh(rel_id)
        assert outcome.snapshot.relationship.current_stage == "family_life"
        metrics.available = False
        for key in ("official_ceremony_held", "adoption_certificate"):
            req = requirement(outcome.snapshot, key)
            await engine.sign_off(rel_id, req.id, ALICE)
            outcome = await engine.sign_off(rel_id, req.id, BOB)

        assert outcome.snapshot.relationship.current_stage == "journey_completed"
        stats = outcome.events[0].payload["stats"]
        assert stats["video_calls"] is None
        assert stats["days_together"] == 0

    asyncio.run(scenario())


def test_stage_detail_for_locked_stage(engine):
    async def scenario():
        rel_id = await open_pair(engine)
        detail = await engine.stage_detail(rel_id, "family_life", ALICE)
        assert detail["is_locked"] is True
        assert detail["unlock_message"] == "Complete all previous stages to unlock Full Adoption."
        with pytest.raises(ValidationError):
            await engine.stage_detail(rel_id, "nope")

    asyncio.run(scenario())
