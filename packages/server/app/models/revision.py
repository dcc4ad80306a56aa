"""Revision model: client feedback on delivered work."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class Revision(UUIDMixin, SQLModel, table=True):
    __tablename__ = "revisions"
    __table_args__ = (
        sa.UniqueConstraint("stage_id", "sequence", name="uq_revisions_stage_sequence"),
    )

    stage_id: uuid.UUID = Field(foreign_key="stages.id", nullable=False, index=True)
    sequence: int = Field(nullable=False)
    feedback: str = Field(nullable=False)
    requested_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    completed_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
