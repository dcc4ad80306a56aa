"""Stage-related Pydantic schemas for shared use across server and frontend codegen."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic import UUID4

from .common import STAGE_TRANSITIONS, PaymentStatus, StageStatus
from .payments import ClaimRead


# ---------------------------------------------------------------------------
# Deliverables
# ---------------------------------------------------------------------------

class DeliverableCreate(BaseModel):
    """A link to finished work attached to a stage."""
    url: str = Field(min_length=1)
    title: str = Field(min_length=1)


class DeliverableRead(BaseModel):
    id: UUID4
    stage_id: UUID4
    url: str
    title: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Revisions
# ---------------------------------------------------------------------------

class RevisionRequest(BaseModel):
    """Request body for POST /stages/{stageId}/revisions."""
    feedback: str = Field(min_length=10)


class RevisionRead(BaseModel):
    id: UUID4
    stage_id: UUID4
    sequence: int
    feedback: str
    requested_at: datetime
    completed_at: Optional[datetime] = None


class CreditBalance(BaseModel):
    """Revision credits left on a stage, split by pool."""
    stage_id: UUID4
    revisions_included: int
    revisions_used: int
    extension_purchased: bool
    extension_revisions_used: int
    included_remaining: int
    extension_remaining: int
    total_remaining: int


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------

class StageCreate(BaseModel):
    name: str
    amount: int = Field(ge=0)
    revisions_included: int = Field(default=2, ge=0)
    extension_price: int = Field(default=0, ge=0)
    extension_purchased: bool = False


class StageDeliver(BaseModel):
    """Request body for POST /stages/{stageId}/deliver.

    Deliverables listed here are attached before the stage is delivered.
    """
    deliverables: List[DeliverableCreate] = Field(default_factory=list)


class StageRead(BaseModel):
    id: UUID4
    project_id: UUID4
    stage_number: int
    name: str
    amount: int
    status: StageStatus
    payment_status: PaymentStatus
    revisions_included: int
    revisions_used: int
    extension_purchased: bool
    extension_price: int
    extension_revisions_used: int
    delivered_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    payment_received_at: Optional[datetime] = None
    deliverables: List[DeliverableRead] = Field(default_factory=list)
    revisions: List[RevisionRead] = Field(default_factory=list)
    claims: List[ClaimRead] = Field(default_factory=list)
    credits: Optional[CreditBalance] = None
    created_at: datetime
    updated_at: datetime


def validate_stage_transition(current: StageStatus, target: StageStatus) -> tuple[bool, str]:
    """Validate a stage status transition against the lifecycle table.

    Returns (is_valid, error_message).
    """
    if current == target:
        return False, f"Stage is already {current.value}"

    allowed = STAGE_TRANSITIONS.get(current, frozenset())
    if target in allowed:
        return True, ""

    if not allowed:
        return False, f"Stage is {current.value} and can no longer change"

    return False, (
        f"Cannot transition stage from {current.value} to {target.value}. "
        f"Allowed: {sorted(s.value for s in allowed)}"
    )
