"""Stage event model (append-only audit log of lifecycle transitions)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from .base import utcnow


class StageEvent(SQLModel, table=True):
    __tablename__ = "stage_events"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    stage_id: Optional[uuid.UUID] = Field(default=None, foreign_key="stages.id", index=True)
    type: str = Field(nullable=False)  # e.g. stage.delivered, payment.verified, stage.unlocked
    actor_role: str = Field(nullable=False)  # freelancer | client | system
    actor_id: Optional[uuid.UUID] = None
    payload: dict = Field(
        default_factory=dict,
        sa_type=sa.JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
    )
    # Set for events that may happen at most once, e.g. unlock:{predecessor_id}
    dedupe_key: Optional[str] = Field(default=None, unique=True)
    timestamp: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
