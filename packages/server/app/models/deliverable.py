"""Deliverable model: a link to finished work on a stage."""

import uuid

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Deliverable(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "deliverables"

    stage_id: uuid.UUID = Field(foreign_key="stages.id", nullable=False, index=True)
    url: str = Field(nullable=False)
    title: str = Field(nullable=False)
