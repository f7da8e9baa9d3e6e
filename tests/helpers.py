from datetime import datetime, timedelta, timezone

from kinship.progression.stages import Stage

ALICE = "alice"   # initiator, party A
BOB = "bob"       # recipient, party B
STRANGER = "mallory"

PLENTY = dict(active_days=40, video_calls=10, diary_entries=10, home_visits=5, meetings=4, memories=12)


class FakeClock:

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def requirement(snapshot, key, stage=None):
    stage = stage or snapshot.relationship.current_stage
    for r in snapshot.requirements_for(stage):
        if r.key == key:
            return r
    raise AssertionError(f"no requirement {key!r} in {stage}")


async def complete_current_stage(engine, metrics, relationship_id):
    """Meets every requirement of the current stage; the last sign-off moves it on."""
    metrics.set(relationship_id, **PLENTY)
    outcome = await engine.refresh(relationship_id)
    stage = outcome.snapshot.relationship.current_stage
    for req in outcome.snapshot.requirements_for(stage):
        if req.is_manual and not req.is_completed:
            await engine.sign_off(relationship_id, req.id, ALICE)
            outcome = await engine.sign_off(relationship_id, req.id, BOB)
    return outcome


async def open_pair(engine):
    snapshot = await engine.open_relationship(ALICE, BOB, application_id="app-1")
    assert snapshot.relationship.current_stage == Stage.GETTING_TO_KNOW.value
    return snapshot.relationship.id
