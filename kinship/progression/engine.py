"""
ProgressionEngine: the constructed service every surface talks to.

Each mutation runs read -> copy -> compute -> conditional commit. The stored
version is the only serialization point, so two writers racing on the same
relationship can both compute, but only one commit lands; the loser re-reads and
recomputes from the fresh state. Events are committed together with the state
they describe, which is what makes each one fire once per logical transition.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cooling_off import (
    DEFAULT_DURATION_SECONDS,
    confirm_end as _confirm_end,
    cooling_off_status,
    request_withdrawal as _request_withdrawal,
    settle,
)
from .errors import (
    ConflictError,
    InvariantViolation,
    NotARelationshipParty,
    RelationshipNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from .feed import ChangeFeed
from .features import describe_features, resolve
from .ledger import sign_off as _sign_off
from .machine import advance, assert_forward_only, can_advance, refresh_progress
from .metrics import MetricsSource
from .milestones import check_milestones, days_together, journey_stats
from .requirements import RequirementEvaluator, build_requirements
from .stages import (
    Stage,
    display_name,
    is_terminal,
    locked_stage_detail,
    next_stage_preview,
    stage_index,
    stage_progression,
)
from .state import (
    Relationship,
    RelationshipEvent,
    Requirement,
    SigningStatus,
    Snapshot,
    new_id,
    utcnow,
)
from .store import RelationshipStore

log = logging.getLogger("kinship-progression")

Action = Callable[[Snapshot, datetime, List[RelationshipEvent]], Awaitable[Any]]


@dataclass
class Outcome:
    """Committed (or unchanged) snapshot plus whatever the change emitted."""

    snapshot: Snapshot
    events: List[RelationshipEvent] = field(default_factory=list)
    result: Any = None
    stale: bool = False

    @property
    def signing_status(self) -> Optional[SigningStatus]:
        return self.result if isinstance(self.result, SigningStatus) else None


def requirement_payload(req: Requirement) -> Dict[str, Any]:
    return {
        "id": req.id,
        "stage": req.stage,
        "key": req.key,
        "title": req.title,
        "description": req.description,
        "completion_mode": req.completion_mode,
        "metric": req.metric,
        "current_value": req.current_value,
        "required_value": req.required_value,
        "party_a_signed": req.party_a_signed,
        "party_b_signed": req.party_b_signed,
        "is_completed": req.is_completed,
        "completed_at": req.completed_at,
        "stale": req.stale,
    }


def feature_keys(snapshot: Snapshot) -> List[str]:
    rel = snapshot.relationship
    if rel.is_ended:
        return []
    return sorted(resolve(rel.current_stage, rel.is_frozen))


def status_payload(snapshot: Snapshot, now: datetime, stale: bool = False) -> Dict[str, Any]:
    rel = snapshot.relationship
    stage = Stage(rel.current_stage)
    return {
        "relationship_id": rel.id,
        "initiator_id": rel.initiator_id,
        "recipient_id": rel.recipient_id,
        "application_id": rel.application_id,
        "status": rel.status,
        "current_stage": stage.value,
        "stage_display_name": display_name(stage),
        "stage_order": stage_index(stage) + 1,
        "stage_started_at": rel.stage_started_at,
        "is_frozen": rel.is_frozen,
        "progress_percent": rel.progress_percent,
        "frozen_at_progress_percent": rel.frozen_at_progress_percent,
        "cooling_off": cooling_off_status(snapshot, now),
        "requirements": [requirement_payload(r) for r in snapshot.current_requirements()],
        "features": feature_keys(snapshot),
        "stale": stale,
        "days_together": days_together(rel.created_at, now),
        "next_stage_preview": next_stage_preview(stage),
        "created_at": rel.created_at,
        "ended_at": rel.ended_at,
        "version": rel.version,
    }


class ProgressionEngine:

    def __init__(
        self,
        store: RelationshipStore,
        metrics: MetricsSource,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
        cooling_off_seconds: int = DEFAULT_DURATION_SECONDS,
        retry_count: int = 5,
        retry_delay: float = 0.05,
    ):
        self.store = store
        self.metrics = metrics
        self.feed = feed
        self.clock = clock
        self.evaluator = RequirementEvaluator(metrics)
        self.cooling_off_seconds = cooling_off_seconds
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay

    # ---------- plumbing ----------

    async def _load(self, relationship_id: str) -> Snapshot:
        snapshot = await self.store.load(relationship_id)
        if snapshot is None:
            raise RelationshipNotFound(relationship_id)
        return snapshot

    async def _publish(self, relationship_id: str, reason: str) -> None:
        if self.feed is not None:
            await self.feed.publish(relationship_id, reason)

    async def _mutate(self, relationship_id: str, action: Optional[Action], reason: str) -> Outcome:
        """
        Runs `action` against a copy of the freshly loaded snapshot, after settling
        any lapsed cooling-off. Commits only when something changed; conflicting
        commits are recomputed from a fresh read.
        """
        for attempt in range(self.retry_count):
            snapshot = await self._load(relationship_id)
            now = self.clock()
            work = snapshot.copy()
            events: List[RelationshipEvent] = []

            try:
                settled = settle(work, now)
                if settled is not None:
                    events.append(settled)
                result = await action(work, now, events) if action else None
                assert_forward_only(snapshot, work)
            except InvariantViolation as e:
                log.error("[REL %s] INVARIANT %s: %s details=%s", relationship_id, reason, e.message, e.details)
                raise

            stale_ids = {r.id for r in work.requirements if r.stale}
            stale = bool(stale_ids)
            if not events and not work.new_attestations and work == snapshot:
                return Outcome(work, events, result, stale)

            work.relationship.updated_at = now
            try:
                committed = await self.store.commit(work, snapshot.relationship.version, events)
            except ConflictError:
                if attempt + 1 >= self.retry_count:
                    log.error("[REL %s] %s gave up after %d conflicts", relationship_id, reason, self.retry_count)
                    raise
                log.warning(
                    "[REL %s] version conflict on %s (attempt %d/%d), retrying",
                    relationship_id, reason, attempt + 1, self.retry_count,
                )
                await asyncio.sleep(self.retry_delay * (attempt + 1))
                continue

            for req in committed.requirements:
                req.stale = req.id in stale_ids
            for ev in events:
                log.info("[REL %s] EVENT %s v%d", relationship_id, ev.kind, committed.relationship.version)
            await self._publish(relationship_id, reason)
            return Outcome(committed, events, result, stale)

    @staticmethod
    def _check_party(snapshot: Snapshot, party_id: Optional[str]) -> None:
        if party_id is not None and snapshot.relationship.role_of(party_id) is None:
            raise NotARelationshipParty(snapshot.relationship.id, party_id)

    async def _journey_stats(self, snapshot: Snapshot, now: datetime) -> Dict[str, Any]:
        rel = snapshot.relationship
        try:
            metrics = await self.metrics.fetch(rel.id, since=rel.created_at)
        except UpstreamUnavailable as e:
            log.warning("[REL %s] journey stats without activity counts: %s", rel.id, e.message)
            metrics = None
        return journey_stats(snapshot, metrics, now)

    async def _advance_if_ready(self, work: Snapshot, now: datetime, events: List[RelationshipEvent]) -> None:
        # one stage per evaluation; the next stage's set was just seeded and is open
        if not can_advance(work):
            refresh_progress(work)
            return
        stats = None
        if Stage(work.relationship.current_stage) == Stage.FAMILY_LIFE:
            stats = await self._journey_stats(work, now)
        events.append(advance(work, now, stats))

    # ---------- operations ----------

    async def open_relationship(
        self,
        initiator_id: str,
        recipient_id: str,
        application_id: Optional[str] = None,
    ) -> Snapshot:
        """Called once the external approval process accepts a match."""
        if not initiator_id or not recipient_id:
            raise ValidationError("Both parties are required.")
        if initiator_id == recipient_id:
            raise ValidationError("A relationship needs two different parties.", {"party_id": initiator_id})

        now = self.clock()
        rel = Relationship(
            id=new_id(),
            initiator_id=initiator_id,
            recipient_id=recipient_id,
            application_id=application_id,
            current_stage=Stage.GETTING_TO_KNOW.value,
            stage_started_at=now,
            created_at=now,
            updated_at=now,
        )
        snapshot = Snapshot(relationship=rel, requirements=build_requirements(rel.id, Stage.GETTING_TO_KNOW))
        refresh_progress(snapshot)

        created = await self.store.create(snapshot)
        await self._publish(rel.id, "opened")
        return created

    async def get_status(self, relationship_id: str, party_id: Optional[str] = None) -> Outcome:
        """
        Read path. Settles a lapsed cooling-off and records milestones, but does not
        pull fresh activity counts; `refresh` does that.
        """
        async def action(work: Snapshot, now: datetime, events: List[RelationshipEvent]):
            self._check_party(work, party_id)
            events.extend(check_milestones(work, now))

        return await self._mutate(relationship_id, action, "status")

    async def evaluate(
        self,
        relationship_id: str,
        stage: Optional[str] = None,
        party_id: Optional[str] = None,
    ) -> Outcome:
        """
        Re-evaluates requirements. For the current stage the results are applied and
        advancement is re-checked, unless progress is frozen: then the evaluation runs
        on a throwaway copy. Other stages are answered from the stored set (or the
        catalog for stages not reached yet). `Outcome.result` is the requirement list.
        """
        async def action(work: Snapshot, now: datetime, events: List[RelationshipEvent]) -> List[Requirement]:
            self._check_party(work, party_id)
            rel = work.relationship
            target = Stage(stage) if stage else Stage(rel.current_stage)

            if target.value != rel.current_stage:
                reqs = work.requirements_for(target)
                return reqs or build_requirements(rel.id, target)

            if rel.is_ended or is_terminal(target):
                return work.current_requirements()

            if rel.is_frozen:
                scratch = work.copy()
                ev = await self.evaluator.evaluate(scratch, now)
                for req in work.current_requirements():
                    req.stale = ev.stale and not req.is_manual
                return ev.requirements

            await self.evaluator.evaluate(work, now)
            await self._advance_if_ready(work, now, events)
            events.extend(check_milestones(work, now))
            return work.requirements_for(target)

        if stage is not None:
            try:
                Stage(stage)
            except ValueError:
                raise ValidationError("Unknown stage.", {"stage": stage}) from None
        return await self._mutate(relationship_id, action, "evaluate")

    async def refresh(self, relationship_id: str, party_id: Optional[str] = None) -> Outcome:
        """Change-feed target: re-run evaluation for the current stage."""
        return await self.evaluate(relationship_id, party_id=party_id)

    async def sign_off(self, relationship_id: str, requirement_id: str, party_id: str) -> Outcome:
        async def action(work: Snapshot, now: datetime, events: List[RelationshipEvent]) -> SigningStatus:
            status = _sign_off(work, requirement_id, party_id, now)
            if status == SigningStatus.COMPLETED:
                await self._advance_if_ready(work, now, events)
            return status

        return await self._mutate(relationship_id, action, "sign_off")

    async def request_withdrawal(self, relationship_id: str, party_id: str, reason: str = "") -> Outcome:
        async def action(work: Snapshot, now: datetime, events: List[RelationshipEvent]):
            events.append(_request_withdrawal(work, party_id, reason, now, self.cooling_off_seconds))

        return await self._mutate(relationship_id, action, "withdrawal")

    async def confirm_end(self, relationship_id: str, party_id: str) -> Outcome:
        """External end signal from the withdrawing party. `result` is False for a repeat."""
        async def action(work: Snapshot, now: datetime, events: List[RelationshipEvent]) -> bool:
            return _confirm_end(work, party_id, now)

        return await self._mutate(relationship_id, action, "confirm_end")

    async def features(self, relationship_id: str, party_id: Optional[str] = None) -> Dict[str, Any]:
        outcome = await self.get_status(relationship_id, party_id)
        rel = outcome.snapshot.relationship
        catalog = describe_features(rel.current_stage, rel.is_frozen)
        if rel.is_ended:
            for item in catalog:
                item["is_unlocked"] = False
                item["unlock_message"] = "This relationship has ended"
        return {
            "relationship_id": rel.id,
            "current_stage": rel.current_stage,
            "is_frozen": rel.is_frozen,
            "enabled": feature_keys(outcome.snapshot),
            "catalog": catalog,
        }

    async def stages(self, relationship_id: str, party_id: Optional[str] = None) -> List[Dict[str, Any]]:
        outcome = await self.get_status(relationship_id, party_id)
        return stage_progression(outcome.snapshot.relationship.current_stage)

    async def stage_detail(self, relationship_id: str, stage: str, party_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            target = Stage(stage)
        except ValueError:
            raise ValidationError("Unknown stage.", {"stage": stage}) from None
        outcome = await self.get_status(relationship_id, party_id)
        return locked_stage_detail(target, outcome.snapshot.relationship.current_stage)

    async def settle_due(self) -> int:
        """Settles every lapsed cooling-off through the normal read path. Returns how many resolved."""
        now = self.clock()
        settled = 0
        for relationship_id in await self.store.due_cooling_offs(now):
            try:
                outcome = await self.get_status(relationship_id)
            except ConflictError:
                # another reader is settling it
                log.warning("[REL %s] sweep skipped after repeated conflicts", relationship_id)
                continue
            if outcome.events:
                settled += 1
        return settled

    def status(self, outcome: Outcome) -> Dict[str, Any]:
        return status_payload(outcome.snapshot, self.clock(), outcome.stale)
