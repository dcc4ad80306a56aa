"""Payment claim schemas: stage payments and extension purchases share one shape."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field
from pydantic import UUID4

from .common import ClaimKind, ClaimStatus, PaymentChannel


class ClaimSubmit(BaseModel):
    """Request body for POST /stages/{stageId}/payments."""
    amount: int = Field(ge=0)
    channel: PaymentChannel = PaymentChannel.BANK_TRANSFER


class ExtensionSubmit(BaseModel):
    """Request body for POST /stages/{stageId}/extensions.

    Amount defaults to the stage's extension price when omitted.
    """
    amount: Optional[int] = Field(default=None, ge=0)
    channel: PaymentChannel = PaymentChannel.BANK_TRANSFER


class ClaimReject(BaseModel):
    reason: str = Field(min_length=1)


class ClaimRead(BaseModel):
    id: UUID4
    stage_id: UUID4
    kind: ClaimKind
    amount: int
    channel: PaymentChannel
    reference_code: str
    status: ClaimStatus
    marked_paid_at: datetime
    verified_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class VerifyResult(BaseModel):
    """Response of a stage payment verification."""
    stage_id: UUID4
    claim_id: UUID4
    unlocked_stage_id: Optional[UUID4] = None
    project_completed: bool = False


class ExternalPaymentConfirmation(BaseModel):
    """Body posted by the trusted card-processor channel.

    external_reference is the processor's payment identifier and is the
    idempotency key for the confirmation.
    """
    stage_id: UUID4
    kind: ClaimKind = ClaimKind.STAGE
    external_reference: str = Field(min_length=1)
    amount: int = Field(ge=0)
