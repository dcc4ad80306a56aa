from typing import Optional, List
from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from .common import ProjectStatus, ReminderTone
from .stages import StageCreate, StageRead


class ProjectBase(BaseModel):
    name: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    currency: str = "USD"


class ProjectCreate(ProjectBase):
    stages: List[StageCreate] = Field(min_length=1)
    # Optional stage 0 gate paid before any work starts
    down_payment: Optional[int] = Field(default=None, gt=0)


class ProjectRead(ProjectBase):
    id: UUID
    owner_id: UUID
    status: ProjectStatus
    total_amount: int
    share_code: Optional[str] = None
    stages: List[StageRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PaymentReminder(BaseModel):
    stage_id: UUID
    stage_number: int
    stage_name: str
    amount: int
    currency: str
    project_id: UUID
    project_name: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    approved_at: datetime
    days_since_approved: int
    tone: ReminderTone


class StageEventRead(BaseModel):
    id: UUID
    project_id: UUID
    stage_id: Optional[UUID] = None
    type: str
    actor_role: str
    actor_id: Optional[UUID] = None
    payload: dict = Field(default_factory=dict)
    timestamp: datetime
