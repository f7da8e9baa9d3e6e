"""kinship baseline

Revision ID: 0001_kinship_baseline
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_kinship_baseline'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- relationships ---
    op.create_table(
        'relationships',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('initiator_id', sa.String(), nullable=False),
        sa.Column('recipient_id', sa.String(), nullable=False),
        sa.Column('application_id', sa.String(), nullable=True),
        sa.Column('current_stage', sa.String(), nullable=False, server_default='getting_to_know'),
        sa.Column('stage_started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('is_frozen', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('frozen_at_progress_percent', sa.Integer(), nullable=True),
        sa.Column('cooling_off_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cooling_off_reason', sa.Text(), nullable=True),
        sa.Column('progress_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_milestone_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_relationships_initiator_id', 'relationships', ['initiator_id'])
    op.create_index('ix_relationships_recipient_id', 'relationships', ['recipient_id'])
    op.create_index('ix_relationships_status', 'relationships', ['status'])

    # --- stage_requirements ---
    op.create_table(
        'stage_requirements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stage', sa.String(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completion_mode', sa.String(), nullable=False),
        sa.Column('metric', sa.String(), nullable=True),
        sa.Column('current_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('required_value', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('party_a_signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('party_b_signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_stage_requirements_relationship_id', 'stage_requirements', ['relationship_id'])
    op.create_index('ix_stage_req_rel_stage_key', 'stage_requirements', ['relationship_id', 'stage', 'key'], unique=True)

    # --- attestations (append-only) ---
    op.create_table(
        'attestations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('requirement_id', sa.String(36), sa.ForeignKey('stage_requirements.id', ondelete='CASCADE'), nullable=False),
        sa.Column('party_id', sa.String(), nullable=False),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_attestations_relationship_id', 'attestations', ['relationship_id'])
    op.create_index('ix_attestations_req_party', 'attestations', ['requirement_id', 'party_id'], unique=True)

    # --- cooling_off_periods ---
    op.create_table(
        'cooling_off_periods',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('requested_by', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=False),
        sa.Column('frozen_stage', sa.String(), nullable=False),
        sa.Column('frozen_progress_percent', sa.Integer(), nullable=False),
        sa.Column('end_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution', sa.String(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_cooling_off_periods_relationship_id', 'cooling_off_periods', ['relationship_id'])
    op.create_index('ix_cooling_off_rel_started', 'cooling_off_periods', ['relationship_id', 'started_at'])
    # at most one unresolved window per relationship
    op.create_index(
        'uq_cooling_off_one_active',
        'cooling_off_periods',
        ['relationship_id'],
        unique=True,
        postgresql_where=sa.text('resolution IS NULL'),
    )

    # --- relationship_events (outbox) ---
    op.create_table(
        'relationship_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('relationship_id', sa.String(36), sa.ForeignKey('relationships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_relationship_events_relationship_id', 'relationship_events', ['relationship_id'])
    op.create_index('ix_rel_events_undelivered', 'relationship_events', ['delivered', 'occurred_at'])


def downgrade() -> None:
    op.drop_table('relationship_events')
    op.drop_table('cooling_off_periods')
    op.drop_table('attestations')
    op.drop_table('stage_requirements')
    op.drop_table('relationships')
