"""Relationship progression models."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _uuid() -> str:
    return str(uuid4())


class RelationshipState(Base):
    """One matched pair and where they stand on the stage ladder."""

    __tablename__ = "relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    initiator_id: Mapped[str] = mapped_column(String, index=True)   # younger party
    recipient_id: Mapped[str] = mapped_column(String, index=True)   # older party
    application_id: Mapped[str | None] = mapped_column(String, nullable=True)

    current_stage: Mapped[str] = mapped_column(String, default="getting_to_know")
    stage_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    status: Mapped[str] = mapped_column(String, default="active")

    # Cooling-off freeze
    is_frozen: Mapped[bool] = mapped_column(Boolean, default=False)
    frozen_at_progress_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cooling_off_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cooling_off_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    last_milestone_days: Mapped[int] = mapped_column(Integer, default=0)

    # optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_relationships_status", "status"),
    )


class StageRequirement(Base):
    """A condition a relationship must meet before leaving a stage."""

    __tablename__ = "stage_requirements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    relationship_id: Mapped[str] = mapped_column(
        ForeignKey("relationships.id", ondelete="CASCADE"), index=True
    )

    stage: Mapped[str] = mapped_column(String, nullable=False)
    key: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    position: Mapped[int] = mapped_column(Integer, default=0)

    completion_mode: Mapped[str] = mapped_column(String, nullable=False)  # "automatic" | "manual"
    metric: Mapped[str | None] = mapped_column(String, nullable=True)
    current_value: Mapped[int] = mapped_column(Integer, default=0)
    required_value: Mapped[int] = mapped_column(Integer, default=1)

    party_a_signed: Mapped[bool] = mapped_column(Boolean, default=False)
    party_b_signed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_stage_req_rel_stage_key", "relationship_id", "stage", "key", unique=True),
    )


class RequirementSignoff(Base):
    """Append-only: one party attesting one manual requirement."""

    __tablename__ = "attestations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    relationship_id: Mapped[str] = mapped_column(
        ForeignKey("relationships.id", ondelete="CASCADE"), index=True
    )
    requirement_id: Mapped[str] = mapped_column(
        ForeignKey("stage_requirements.id", ondelete="CASCADE"), nullable=False
    )
    party_id: Mapped[str] = mapped_column(String, nullable=False)
    signed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_attestations_req_party", "requirement_id", "party_id", unique=True),
    )


class CoolingOffWindow(Base):
    """Reflection window opened by a withdrawal request."""

    __tablename__ = "cooling_off_periods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    relationship_id: Mapped[str] = mapped_column(
        ForeignKey("relationships.id", ondelete="CASCADE"), index=True
    )
    requested_by: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    frozen_stage: Mapped[str] = mapped_column(String, nullable=False)
    frozen_progress_percent: Mapped[int] = mapped_column(Integer, nullable=False)

    end_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)  # "resumed" | "relationship_ended"
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_cooling_off_rel_started", "relationship_id", "started_at"),
        # at most one unresolved window per relationship
        Index(
            "uq_cooling_off_one_active",
            "relationship_id",
            unique=True,
            postgresql_where=text("resolution IS NULL"),
            sqlite_where=text("resolution IS NULL"),
        ),
    )


class RelationshipEventLog(Base):
    """Outbox of logical events for the external notifier."""

    __tablename__ = "relationship_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    relationship_id: Mapped[str] = mapped_column(
        ForeignKey("relationships.id", ondelete="CASCADE"), index=True
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    delivered: Mapped[bool] = mapped_column(Boolean, default=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_rel_events_undelivered", "delivered", "occurred_at"),
    )
