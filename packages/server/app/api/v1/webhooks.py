"""
Trusted payment confirmation channel (card processor).

Authenticated with X-Webhook-Secret. Redelivery of the same processor
event is harmless: the external reference is the idempotency key.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.auth import ActorContext, require_system
from app.services.milestones import MilestoneService, get_milestone_service
from milestage_shared.schemas.payments import ExternalPaymentConfirmation, VerifyResult

router = APIRouter()


@router.post("/payments", response_model=VerifyResult)
async def confirm_external_payment(
    body: ExternalPaymentConfirmation,
    actor: ActorContext = Depends(require_system),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.confirm_external_payment(
        body.stage_id,
        body.external_reference,
        body.amount,
        actor,
        kind=body.kind,
    )
