"""
Claim verification endpoints (freelancer).

- /payments/{claimId}/verify|reject: stage payments
- /extensions/{claimId}/verify|reject: extension purchases
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from app.core.auth import ActorContext, require_freelancer
from app.services.milestones import MilestoneService, get_milestone_service
from milestage_shared.schemas.payments import ClaimRead, ClaimReject, VerifyResult
from milestage_shared.schemas.stages import StageRead

router = APIRouter()


@router.post("/payments/{claim_id}/verify", response_model=VerifyResult)
async def verify_payment_claim(
    claim_id: uuid.UUID,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Confirm the money arrived: completes the stage and unlocks the next one."""
    return await service.verify_payment_claim(claim_id, actor)


@router.post("/payments/{claim_id}/reject", response_model=ClaimRead)
async def reject_payment_claim(
    claim_id: uuid.UUID,
    body: ClaimReject,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.reject_payment_claim(claim_id, body.reason, actor)


@router.post("/extensions/{claim_id}/verify", response_model=StageRead)
async def verify_extension_claim(
    claim_id: uuid.UUID,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.verify_extension_claim(claim_id, actor)


@router.post("/extensions/{claim_id}/reject", response_model=ClaimRead)
async def reject_extension_claim(
    claim_id: uuid.UUID,
    body: ClaimReject,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.reject_extension_claim(claim_id, body.reason, actor)
