"""
Stage endpoints: the lifecycle state machine and claim submission.

Freelancer: start, deliverables, deliver, manual revisions
Client: revision requests, approval, "I've paid" claims, extension purchases
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from app.core.auth import ActorContext, get_actor
from app.services.milestones import MilestoneService, get_milestone_service
from milestage_shared.schemas.payments import ClaimRead, ClaimSubmit, ExtensionSubmit
from milestage_shared.schemas.stages import (
    CreditBalance,
    DeliverableCreate,
    DeliverableRead,
    RevisionRequest,
    StageDeliver,
    StageRead,
)

router = APIRouter()


@router.get("/{stage_id}/credits", response_model=CreditBalance)
async def get_credit_balance(
    stage_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.get_credit_balance(stage_id, actor)


# ---------------------------------------------------------------------------
# Freelancer actions
# ---------------------------------------------------------------------------


@router.post("/{stage_id}/start", response_model=StageRead)
async def start_stage(
    stage_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.start_stage(stage_id, actor)


@router.post(
    "/{stage_id}/deliverables",
    response_model=DeliverableRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_deliverable(
    stage_id: uuid.UUID,
    body: DeliverableCreate,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.add_deliverable(stage_id, body, actor)


@router.delete("/deliverables/{deliverable_id}", response_model=StageRead)
async def remove_deliverable(
    deliverable_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.remove_deliverable(deliverable_id, actor)


@router.post("/{stage_id}/deliver", response_model=StageRead)
async def deliver_stage(
    stage_id: uuid.UUID,
    body: StageDeliver,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Submit the stage for review. Requires at least one deliverable."""
    return await service.deliver_stage(stage_id, body.deliverables, actor)


@router.post("/{stage_id}/manual-revisions", response_model=StageRead)
async def log_manual_revision(
    stage_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Count a revision agreed outside the portal against the stage's credits."""
    return await service.log_manual_revision(stage_id, actor)


# ---------------------------------------------------------------------------
# Client actions
# ---------------------------------------------------------------------------


@router.post("/{stage_id}/revisions", response_model=StageRead)
async def request_revision(
    stage_id: uuid.UUID,
    body: RevisionRequest,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.request_revision(stage_id, body.feedback, actor)


@router.post("/{stage_id}/approve", response_model=StageRead)
async def approve_stage(
    stage_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.approve_stage(stage_id, actor)


@router.post(
    "/{stage_id}/payments",
    response_model=ClaimRead,
    status_code=status.HTTP_201_CREATED,
)
async def submit_payment_claim(
    stage_id: uuid.UUID,
    body: ClaimSubmit,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Client marks the stage as paid; the freelancer verifies it later."""
    return await service.submit_payment_claim(stage_id, body.amount, body.channel, actor)


@router.post(
    "/{stage_id}/extensions",
    response_model=ClaimRead,
    status_code=status.HTTP_201_CREATED,
)
async def submit_extension_claim(
    stage_id: uuid.UUID,
    body: ExtensionSubmit,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.submit_extension_claim(stage_id, body.amount, body.channel, actor)
