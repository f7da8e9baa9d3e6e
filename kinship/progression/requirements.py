"""
Requirement Evaluator.

Automatic requirements are recomputed from activity counters measured since the
stage started; manual requirements are derived from the attestation ledger.
A completed requirement never reverts, and a metrics outage only ever serves the
last-known values (flagged `stale`), so a transient read failure cannot make a
stage regress.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .errors import UpstreamUnavailable
from .metrics import ActivityMetrics, MetricsSource
from .stages import Stage
from .state import CompletionMode, Requirement, Snapshot, new_id

log = logging.getLogger("kinship-progression")


@dataclass(frozen=True)
class RequirementTemplate:
    key: str
    title: str
    description: str
    completion_mode: CompletionMode
    metric: Optional[str] = None
    required_value: int = 1


AUTO = CompletionMode.AUTOMATIC
MANUAL = CompletionMode.MANUAL

STAGE_REQUIREMENTS = {
    Stage.GETTING_TO_KNOW: [
        RequirementTemplate("active_days", "Chat on 7 different days",
                            "Keep in touch on at least seven separate days.", AUTO, "active_days", 7),
        RequirementTemplate("met_in_person", "Met in person",
                            "Both of you confirm you have met face to face.", MANUAL),
    ],
    Stage.TRIAL_PERIOD: [
        RequirementTemplate("weekly_video_calls", "Weekly video calls",
                            "Complete three video calls together.", AUTO, "video_calls", 3),
        RequirementTemplate("shared_diary", "Shared diary entries",
                            "Write five entries in your shared diary.", AUTO, "diary_entries", 5),
        RequirementTemplate("active_days", "Stay in touch for three weeks",
                            "Keep in touch on at least 21 separate days.", AUTO, "active_days", 21),
        RequirementTemplate("trust_exercise", "Complete a trust exercise",
                            "Both of you confirm you finished a trust exercise together.", MANUAL),
    ],
    Stage.OFFICIAL_CEREMONY: [
        RequirementTemplate("offline_meetup", "One offline meetup",
                            "Meet for coffee or a meal.", MANUAL),
        RequirementTemplate("video_calls", "Weekly video call for 3 weeks",
                            "Complete three more video calls.", AUTO, "video_calls", 3),
        RequirementTemplate("weekly_tasks", "Help with simple weekly tasks",
                            "Both of you confirm you have helped each other with weekly tasks.", MANUAL),
    ],
    Stage.FAMILY_LIFE: [
        RequirementTemplate("home_visits", "Full family integration",
                            "Visit each other at home twice.", AUTO, "home_visits", 2),
        RequirementTemplate("official_ceremony_held", "Official ceremony",
                            "Both of you confirm the ceremony took place.", MANUAL),
        RequirementTemplate("adoption_certificate", "Certificate of adoption",
                            "Both of you confirm you received the certificate.", MANUAL),
    ],
    Stage.JOURNEY_COMPLETED: [],
}


def templates_for(stage) -> List[RequirementTemplate]:
    return STAGE_REQUIREMENTS[Stage(stage)]


def build_requirements(relationship_id: str, stage) -> List[Requirement]:
    stage = Stage(stage)
    return [
        Requirement(
            id=new_id(),
            relationship_id=relationship_id,
            stage=stage.value,
            key=t.key,
            title=t.title,
            description=t.description,
            completion_mode=t.completion_mode.value,
            position=pos,
            metric=t.metric,
            required_value=t.required_value if t.completion_mode == AUTO else 2,
        )
        for pos, t in enumerate(templates_for(stage))
    ]


def progress_percent(requirements: List[Requirement]) -> int:
    total = len(requirements)
    if total == 0:
        return 0
    done = sum(1 for r in requirements if r.is_completed)
    # round half up, integer arithmetic
    return (done * 200 + total) // (2 * total)


def _mark_complete(req: Requirement, now: datetime) -> bool:
    if req.is_completed:
        return False
    req.is_completed = True
    req.completed_at = now
    return True


def apply_manual(req: Requirement, snapshot: Snapshot, now: datetime) -> bool:
    """Derive a manual requirement from the ledger. Returns True on the completing transition."""
    rel = snapshot.relationship
    req.party_a_signed = req.party_a_signed or snapshot.has_attestation(req.id, rel.initiator_id)
    req.party_b_signed = req.party_b_signed or snapshot.has_attestation(req.id, rel.recipient_id)
    req.current_value = int(req.party_a_signed) + int(req.party_b_signed)
    if req.party_a_signed and req.party_b_signed:
        return _mark_complete(req, now)
    return False


def apply_automatic(req: Requirement, metrics: ActivityMetrics, now: datetime) -> bool:
    value = metrics.value_of(req.metric or "")
    if req.is_completed:
        # hold the achieved value so the checklist never shows a drop
        req.current_value = max(req.current_value, value)
        return False
    req.current_value = value
    if value >= req.required_value:
        return _mark_complete(req, now)
    return False


@dataclass
class Evaluation:
    stage: str
    requirements: List[Requirement]
    newly_completed: List[str] = field(default_factory=list)
    stale: bool = False

    @property
    def all_completed(self) -> bool:
        return bool(self.requirements) and all(r.is_completed for r in self.requirements)


class RequirementEvaluator:

    def __init__(self, metrics: MetricsSource):
        self.metrics = metrics

    async def evaluate(self, snapshot: Snapshot, now: datetime) -> Evaluation:
        """
        Re-evaluates the current stage's requirements in place on `snapshot`.

        Returns the evaluation with the ids of requirements that just went from
        incomplete to complete; the caller re-checks advancement on those.
        """
        rel = snapshot.relationship
        reqs = snapshot.current_requirements()
        ev = Evaluation(stage=rel.current_stage, requirements=reqs)
        if not reqs:
            return ev

        metrics: ActivityMetrics | None = None
        if any(not r.is_manual for r in reqs):
            try:
                metrics = await self.metrics.fetch(rel.id, since=rel.stage_started_at)
            except UpstreamUnavailable as e:
                log.warning("[REL %s] metrics unavailable, serving last-known values: %s", rel.id, e.message)
                ev.stale = True

        for req in reqs:
            if req.is_manual:
                changed = apply_manual(req, snapshot, now)
            elif metrics is None:
                req.stale = True
                changed = False
            else:
                req.stale = False
                changed = apply_automatic(req, metrics, now)
            if changed:
                ev.newly_completed.append(req.id)

        if ev.newly_completed:
            log.info("[REL %s] requirements completed stage=%s ids=%s", rel.id, rel.current_stage, ev.newly_completed)
        return ev
