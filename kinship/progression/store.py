import asyncio
import copy
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .errors import ConflictError, InvariantViolation, ValidationError
from .state import CoolingOffPeriod, RelationshipEvent, Snapshot


class RelationshipStore(Protocol):
    """
    Keyed record store with conditional writes.

    `commit` succeeds only if the stored relationship version still equals
    `expected_version`; it bumps the version and writes the snapshot, its new
    attestations, and `events` atomically. Otherwise it raises ConflictError.
    """

    async def create(self, snapshot: Snapshot) -> Snapshot: ...

    async def load(self, relationship_id: str) -> Optional[Snapshot]: ...

    async def commit(self, snapshot: Snapshot, expected_version: int, events: List[RelationshipEvent]) -> Snapshot: ...

    async def due_cooling_offs(self, now: datetime) -> List[str]: ...


def check_single_active_period(relationship_id: str, periods: List[CoolingOffPeriod]) -> None:
    active = [p for p in periods if p.is_active]
    if len(active) > 1:
        raise InvariantViolation(
            "More than one active cooling-off period.",
            {"relationship_id": relationship_id, "periods": [p.id for p in active]},
        )


class MemoryRelationshipStore:
    """In-process store. Every load hands out a deep copy, like a fresh DB read."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._snapshots: Dict[str, Snapshot] = {}
        self._periods: Dict[str, List[CoolingOffPeriod]] = {}
        self.events: List[RelationshipEvent] = []

    async def create(self, snapshot: Snapshot) -> Snapshot:
        async with self._lock:
            rel_id = snapshot.relationship.id
            if rel_id in self._snapshots:
                raise ValidationError("Relationship already exists.", {"relationship_id": rel_id})
            stored = snapshot.copy()
            stored.attestations = stored.attestations + stored.new_attestations
            stored.new_attestations = []
            self._snapshots[rel_id] = stored
            self._periods[rel_id] = [stored.cooling_off] if stored.cooling_off else []
            return stored.copy()

    async def load(self, relationship_id: str) -> Optional[Snapshot]:
        async with self._lock:
            stored = self._snapshots.get(relationship_id)
            if stored is None:
                return None
            check_single_active_period(relationship_id, self._periods[relationship_id])
            return stored.copy()

    async def commit(self, snapshot: Snapshot, expected_version: int, events: List[RelationshipEvent]) -> Snapshot:
        async with self._lock:
            rel_id = snapshot.relationship.id
            stored = self._snapshots.get(rel_id)
            if stored is None or stored.relationship.version != expected_version:
                raise ConflictError(
                    "Relationship changed concurrently.",
                    {"relationship_id": rel_id, "expected_version": expected_version},
                )

            written = list(snapshot.superseded_periods)
            if snapshot.cooling_off is not None:
                written.append(snapshot.cooling_off)
            written_ids = {p.id for p in written}
            periods = [p for p in self._periods[rel_id] if p.id not in written_ids]
            periods.extend(copy.deepcopy(p) for p in written)
            check_single_active_period(rel_id, periods)

            new = snapshot.copy()
            new.relationship.version = expected_version + 1
            new.attestations = stored.attestations + new.new_attestations
            new.new_attestations = []
            new.superseded_periods = []
            for req in new.requirements:
                req.stale = False

            self._periods[rel_id] = periods
            self._snapshots[rel_id] = new
            self.events.extend(copy.deepcopy(events))
            return new.copy()

    async def due_cooling_offs(self, now: datetime) -> List[str]:
        async with self._lock:
            return [
                rel_id
                for rel_id, periods in self._periods.items()
                if any(p.is_active and p.has_lapsed(now) for p in periods)
            ]
