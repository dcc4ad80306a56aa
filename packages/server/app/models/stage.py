"""Stage model: one billable milestone of a project."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin

# Optimistic concurrency counter; every UPDATE is a compare-and-swap on it.
_version_col = sa.Column("version", sa.Integer, nullable=False, server_default="1")


class Stage(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "stages"
    __table_args__ = (
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
    __mapper_args__ = {"version_id_col": _version_col}

    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    stage_number: int = Field(nullable=False)  # 0 = down payment gate
    name: str = Field(nullable=False)
    amount: int = Field(default=0, nullable=False)
    status: str = Field(default="locked", nullable=False)
    payment_status: str = Field(default="unpaid", nullable=False)  # unpaid | pending | received
    revisions_included: int = Field(default=0, nullable=False)
    revisions_used: int = Field(default=0, nullable=False)
    extension_purchased: bool = Field(default=False, nullable=False)
    extension_price: int = Field(default=0, nullable=False)
    extension_revisions_used: int = Field(default=0, nullable=False)
    delivered_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    approved_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    payment_received_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    version: int = Field(default=1, sa_column=_version_col)
