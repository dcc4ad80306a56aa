"""Payment claim model (stage payments and extension purchases)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin, utcnow

_version_col = sa.Column("version", sa.Integer, nullable=False, server_default="1")


class PaymentClaim(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "payment_claims"
    __table_args__ = (
        # At most one outstanding claim per stage and ledger
        sa.Index(
            "uq_payment_claims_outstanding",
            "stage_id",
            "kind",
            unique=True,
            postgresql_where=sa.text("status = 'marked_paid'"),
            sqlite_where=sa.text("status = 'marked_paid'"),
        ),
        sa.CheckConstraint("kind IN ('stage', 'extension')", name="ck_payment_claims_kind"),
        sa.CheckConstraint(
            "status IN ('marked_paid', 'verified', 'rejected')",
            name="ck_payment_claims_status",
        ),
    )
    __mapper_args__ = {"version_id_col": _version_col}

    stage_id: uuid.UUID = Field(foreign_key="stages.id", nullable=False, index=True)
    kind: str = Field(default="stage", nullable=False)  # stage | extension
    amount: int = Field(nullable=False)
    channel: str = Field(default="bank_transfer", nullable=False)
    reference_code: str = Field(nullable=False, unique=True)
    status: str = Field(default="marked_paid", nullable=False)  # marked_paid | verified | rejected
    # Stage status to restore if the claim is rejected
    stage_status_before: Optional[str] = None
    marked_paid_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    verified_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    rejected_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    rejection_reason: Optional[str] = None
    version: int = Field(default=1, sa_column=_version_col)
