"""Project model."""

from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Project(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "projects"
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('active', 'paused', 'completed', 'archived')",
            name="ck_projects_status",
        ),
    )

    owner_id: uuid.UUID = Field(nullable=False, index=True)  # freelancer, from the identity provider
    name: str = Field(nullable=False)
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    currency: str = Field(default="USD", nullable=False)
    total_amount: int = Field(default=0, nullable=False)
    status: str = Field(default="active", nullable=False)  # active | paused | completed | archived
    share_code: str = Field(nullable=False, unique=True, index=True)
