from datetime import datetime
from typing import Any, Dict, List, Optional

from .metrics import ActivityMetrics
from .state import EventKind, RelationshipEvent, Snapshot

MILESTONE_DAYS = (7, 14, 30, 60, 90, 180, 365)


def days_together(start: Optional[datetime], now: datetime) -> int:
    if not start:
        return 0
    diff = (now.date() - start.date()).days
    return max(0, diff)


def milestone_message(days: int) -> str:
    if days >= 365:
        return f"Congratulations! You've completed {days} days together. A full year of wonderful connection!"
    if days >= 180:
        return f"Congratulations! You've completed {days} days together. Half a year of beautiful memories!"
    if days >= 90:
        return f"Congratulations! You've completed {days} days together. Keep up the wonderful connection!"
    if days >= 60:
        return f"Congratulations! You've completed {days} days together. Two months of precious moments!"
    if days >= 30:
        return f"Congratulations! You've completed {days} days together. Keep up the wonderful connection!"
    if days >= 14:
        return f"Congratulations! You've completed {days} days together. Two weeks of bonding!"
    if days >= 7:
        return f"Congratulations! You've completed {days} days together. Your first week milestone!"
    return f"You've been together for {days} days!"


def check_milestones(snapshot: Snapshot, now: datetime) -> List[RelationshipEvent]:
    """
    Emits one milestone_reached event per threshold crossed since the last one
    recorded, lowest first. Paused and ended relationships do not collect milestones.
    """
    rel = snapshot.relationship
    if rel.is_ended or rel.is_frozen:
        return []

    days = days_together(rel.created_at, now)
    crossed = [m for m in MILESTONE_DAYS if rel.last_milestone_days < m <= days]
    if crossed:
        rel.last_milestone_days = crossed[-1]
    return [
        RelationshipEvent(
            relationship_id=rel.id,
            kind=EventKind.MILESTONE_REACHED.value,
            occurred_at=now,
            payload={"days": reached, "message": milestone_message(reached)},
        )
        for reached in crossed
    ]


def journey_stats(snapshot: Snapshot, metrics: Optional[ActivityMetrics], now: datetime) -> Dict[str, Any]:
    rel = snapshot.relationship
    stats: Dict[str, Any] = {"days_together": days_together(rel.created_at, now)}
    for name in ("video_calls", "home_visits", "meetings", "memories", "active_days"):
        stats[name] = metrics.value_of(name) if metrics is not None else None
    return stats
