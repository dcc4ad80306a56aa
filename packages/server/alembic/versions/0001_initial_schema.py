"""Initial schema: projects, stages, deliverables, revisions, claims, events.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # projects
    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("client_name", sa.Text(), nullable=True),
        sa.Column("client_email", sa.Text(), nullable=True),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("total_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("share_code", sa.Text(), nullable=False, unique=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'paused', 'completed', 'archived')",
            name="ck_projects_status",
        ),
    )
    op.create_index("idx_projects_owner", "projects", ["owner_id"])

    # stages
    op.create_table(
        "stages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stage_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.Text(), nullable=False, server_default="locked"),
        sa.Column("payment_status", sa.Text(), nullable=False, server_default="unpaid"),
        sa.Column("revisions_included", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revisions_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extension_purchased", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("extension_price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extension_revisions_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("project_id", "stage_number", name="uq_stages_project_stage_number"),
        sa.CheckConstraint(
            "revisions_used >= 0 AND revisions_used <= revisions_included",
            name="ck_stages_revisions_used",
        ),
        sa.CheckConstraint(
            "extension_revisions_used >= 0 AND extension_revisions_used <= 3",
            name="ck_stages_extension_revisions_used",
        ),
        sa.CheckConstraint(
            "stage_number > 0 OR revisions_included = 0",
            name="ck_stages_down_payment_no_revisions",
        ),
        sa.CheckConstraint(
            "status IN ('locked', 'active', 'in_progress', 'delivered', "
            "'revision_requested', 'approved', 'payment_pending', 'completed')",
            name="ck_stages_status",
        ),
        sa.CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'received')",
            name="ck_stages_payment_status",
        ),
    )
    op.create_index("idx_stages_project", "stages", ["project_id"])

    # deliverables
    op.create_table(
        "deliverables",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stage_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_deliverables_stage", "deliverables", ["stage_id"])

    # revisions
    op.create_table(
        "revisions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stage_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("stage_id", "sequence", name="uq_revisions_stage_sequence"),
    )
    op.create_index("idx_revisions_stage", "revisions", ["stage_id"])

    # payment_claims
    op.create_table(
        "payment_claims",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stage_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False, server_default="stage"),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("channel", sa.Text(), nullable=False, server_default="bank_transfer"),
        sa.Column("reference_code", sa.Text(), nullable=False, unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="marked_paid"),
        sa.Column("stage_status_before", sa.Text(), nullable=True),
        sa.Column("marked_paid_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("kind IN ('stage', 'extension')", name="ck_payment_claims_kind"),
        sa.CheckConstraint(
            "status IN ('marked_paid', 'verified', 'rejected')",
            name="ck_payment_claims_status",
        ),
    )
    op.create_index("idx_payment_claims_stage", "payment_claims", ["stage_id"])
    # At most one outstanding claim per stage and ledger
    op.create_index(
        "uq_payment_claims_outstanding",
        "payment_claims",
        ["stage_id", "kind"],
        unique=True,
        postgresql_where=sa.text("status = 'marked_paid'"),
    )

    # stage_events (append-only)
    op.create_table(
        "stage_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stage_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=True),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("actor_role", sa.Text(), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("dedupe_key", sa.Text(), nullable=True, unique=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_stage_events_project", "stage_events", ["project_id", "timestamp"])
    op.create_index("idx_stage_events_stage", "stage_events", ["stage_id"])

    # Events are immutable once written
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_stage_event_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'stage_events is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER stage_events_immutable
        BEFORE UPDATE ON stage_events
        FOR EACH ROW EXECUTE FUNCTION prevent_stage_event_mutation();
    """)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS stage_events_immutable ON stage_events")
    op.execute("DROP FUNCTION IF EXISTS prevent_stage_event_mutation()")
    op.drop_table("stage_events")
    op.drop_table("payment_claims")
    op.drop_table("revisions")
    op.drop_table("deliverables")
    op.drop_table("stages")
    op.drop_table("projects")
