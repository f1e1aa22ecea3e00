"""Create processor event ledger and replay attempt tables."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "processor_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("source", sa.Enum("STRIPE", name="processor_event_source_enum"), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("policy_id", sa.String(length=128), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("RECEIVED", "PROCESSED", "IGNORED", "FAILED", name="processor_event_status_enum"),
            nullable=False,
        ),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("replay_requested", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("replay_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replay_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_replay_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("source", "external_id", name="uq_processor_event_source_external"),
    )
    op.create_index("ix_processor_events_replay_requested", "processor_events", ["replay_requested"])

    op.create_table(
        "processor_event_replay_attempts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata_snapshot", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["event_id"], ["processor_events.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_processor_event_replay_attempts_event_id",
        "processor_event_replay_attempts",
        ["event_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_processor_event_replay_attempts_event_id",
        table_name="processor_event_replay_attempts",
    )
    op.drop_table("processor_event_replay_attempts")
    op.drop_index("ix_processor_events_replay_requested", table_name="processor_events")
    op.drop_table("processor_events")
    sa.Enum(name="processor_event_status_enum").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="processor_event_source_enum").drop(op.get_bind(), checkfirst=True)
