import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from kinship.db.models import (
    CoolingOffWindow,
    RelationshipEventLog,
    RelationshipState,
    RequirementSignoff,
    StageRequirement,
)
from .errors import ConflictError, InvariantViolation, ValidationError
from .state import Attestation, CoolingOffPeriod, Relationship, RelationshipEvent, Requirement, Snapshot
from .store import check_single_active_period

log = logging.getLogger(__name__)

_REL_FIELDS = (
    "initiator_id", "recipient_id", "application_id", "current_stage", "stage_started_at",
    "status", "is_frozen", "frozen_at_progress_percent", "cooling_off_started_at",
    "cooling_off_reason", "progress_percent", "last_milestone_days", "created_at",
    "updated_at", "ended_at",
)
_REQ_FIELDS = (
    "id", "relationship_id", "stage", "key", "title", "description", "position",
    "completion_mode", "metric", "current_value", "required_value", "party_a_signed",
    "party_b_signed", "is_completed", "completed_at",
)
_PERIOD_FIELDS = (
    "id", "relationship_id", "requested_by", "reason", "started_at", "duration_seconds",
    "frozen_stage", "frozen_progress_percent", "end_confirmed_at", "resolution", "resolved_at",
)


def _aware(value):
    # sqlite hands back naive datetimes; everything here is UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _copy(src, dst_cls, names):
    return dst_cls(**{n: _aware(getattr(src, n)) for n in names})


def _to_relationship(row: RelationshipState) -> Relationship:
    rel = _copy(row, Relationship, ("id",) + _REL_FIELDS)
    rel.version = row.version
    return rel


def _to_period(row: CoolingOffWindow) -> CoolingOffPeriod:
    return _copy(row, CoolingOffPeriod, _PERIOD_FIELDS)


def _to_attestation(row: RequirementSignoff) -> Attestation:
    return Attestation(
        id=row.id,
        relationship_id=row.relationship_id,
        requirement_id=row.requirement_id,
        party_id=row.party_id,
        signed_at=_aware(row.signed_at),
    )


def _event_row(ev: RelationshipEvent) -> RelationshipEventLog:
    return RelationshipEventLog(
        id=ev.id,
        relationship_id=ev.relationship_id,
        kind=ev.kind,
        payload=ev.payload,
        occurred_at=ev.occurred_at,
    )


def _signoff_row(a: Attestation) -> RequirementSignoff:
    return RequirementSignoff(
        id=a.id,
        relationship_id=a.relationship_id,
        requirement_id=a.requirement_id,
        party_id=a.party_id,
        signed_at=a.signed_at,
    )


class SqlRelationshipStore:
    """RelationshipStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def create(self, snapshot: Snapshot) -> Snapshot:
        rel = snapshot.relationship
        async with self.session_factory() as db:
            db.add(RelationshipState(
                id=rel.id,
                version=rel.version,
                **{n: getattr(rel, n) for n in _REL_FIELDS},
            ))
            await db.flush()
            db.add_all([_copy(r, StageRequirement, _REQ_FIELDS) for r in snapshot.requirements])
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise ValidationError("Relationship already exists.", {"relationship_id": rel.id}) from e

        log.info("[REL %s] created stage=%s initiator=%s recipient=%s",
                 rel.id, rel.current_stage, rel.initiator_id, rel.recipient_id)
        return await self.load(rel.id)

    async def load(self, relationship_id: str) -> Optional[Snapshot]:
        async with self.session_factory() as db:
            row = await db.get(RelationshipState, relationship_id)
            if row is None:
                return None

            reqs = (await db.execute(
                select(StageRequirement)
                .where(StageRequirement.relationship_id == relationship_id)
                .order_by(StageRequirement.stage, StageRequirement.position)
            )).scalars().all()

            signoffs = (await db.execute(
                select(RequirementSignoff)
                .where(RequirementSignoff.relationship_id == relationship_id)
                .order_by(RequirementSignoff.signed_at)
            )).scalars().all()

            periods = [_to_period(p) for p in (await db.execute(
                select(CoolingOffWindow)
                .where(CoolingOffWindow.relationship_id == relationship_id)
                .order_by(CoolingOffWindow.started_at.desc())
            )).scalars().all()]

        check_single_active_period(relationship_id, periods)
        active = [p for p in periods if p.is_active]
        latest = active[0] if active else (periods[0] if periods else None)

        return Snapshot(
            relationship=_to_relationship(row),
            requirements=[_copy(r, Requirement, _REQ_FIELDS) for r in reqs],
            attestations=[_to_attestation(a) for a in signoffs],
            cooling_off=latest,
        )

    async def commit(self, snapshot: Snapshot, expected_version: int, events: List[RelationshipEvent]) -> Snapshot:
        rel = snapshot.relationship
        async with self.session_factory() as db:
            try:
                res = await db.execute(
                    update(RelationshipState)
                    .where(
                        RelationshipState.id == rel.id,
                        RelationshipState.version == expected_version,
                    )
                    .values(version=expected_version + 1, **{n: getattr(rel, n) for n in _REL_FIELDS})
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise ConflictError(
                        "Relationship changed concurrently.",
                        {"relationship_id": rel.id, "expected_version": expected_version},
                    )

                for req in snapshot.requirements:
                    await db.merge(_copy(req, StageRequirement, _REQ_FIELDS))
                await db.flush()

                db.add_all([_signoff_row(a) for a in snapshot.new_attestations])

                for old in snapshot.superseded_periods:
                    await db.merge(_copy(old, CoolingOffWindow, _PERIOD_FIELDS))
                await db.flush()

                period = snapshot.cooling_off
                if period is not None:
                    if period.is_active:
                        others = (await db.execute(
                            select(CoolingOffWindow.id).where(
                                CoolingOffWindow.relationship_id == rel.id,
                                CoolingOffWindow.resolution.is_(None),
                                CoolingOffWindow.id != period.id,
                            )
                        )).scalars().all()
                        if others:
                            raise InvariantViolation(
                                "More than one active cooling-off period.",
                                {"relationship_id": rel.id, "periods": [period.id, *others]},
                            )
                    await db.merge(_copy(period, CoolingOffWindow, _PERIOD_FIELDS))

                db.add_all([_event_row(ev) for ev in events])
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise ConflictError("Concurrent write rejected by the store.", {"relationship_id": rel.id}) from e
            except Exception:
                await db.rollback()
                raise

        committed = snapshot.copy()
        committed.relationship.version = expected_version + 1
        committed.attestations = snapshot.attestations + snapshot.new_attestations
        committed.new_attestations = []
        committed.superseded_periods = []
        return committed

    async def due_cooling_offs(self, now: datetime) -> List[str]:
        async with self.session_factory() as db:
            rows = (await db.execute(
                select(CoolingOffWindow).where(CoolingOffWindow.resolution.is_(None))
            )).scalars().all()
        return [row.relationship_id for row in rows if _to_period(row).has_lapsed(now)]
