"""
Project endpoints: creation, read model, status changes, audit log.

- Freelancers create and manage their own projects (JWT)
- Clients read the project their share code belongs to
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from app.core.auth import ActorContext, get_actor, require_freelancer
from app.services.milestones import MilestoneService, get_milestone_service
from milestage_shared.schemas.projects import (
    PaymentReminder,
    ProjectCreate,
    ProjectRead,
    StageEventRead,
)

router = APIRouter()


@router.post("/", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Create a project; the first stage (down payment if given) starts active."""
    return await service.create_project(body, actor)


@router.get("/reminders", response_model=List[PaymentReminder])
async def list_payment_reminders(
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Approved stages awaiting payment across the freelancer's projects, oldest first."""
    return await service.list_payment_reminders(actor)


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(
    project_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.get_project(project_id, actor)


@router.get("/{project_id}/events", response_model=List[StageEventRead])
async def list_project_events(
    project_id: uuid.UUID,
    type: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    service: MilestoneService = Depends(get_milestone_service),
):
    """Audit log of lifecycle transitions, oldest first."""
    return await service.list_project_events(project_id, actor, type)


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------


@router.post("/{project_id}/pause", response_model=ProjectRead)
async def pause_project(
    project_id: uuid.UUID,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.pause_project(project_id, actor)


@router.post("/{project_id}/resume", response_model=ProjectRead)
async def resume_project(
    project_id: uuid.UUID,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.resume_project(project_id, actor)


@router.post("/{project_id}/archive", response_model=ProjectRead)
async def archive_project(
    project_id: uuid.UUID,
    actor: ActorContext = Depends(require_freelancer),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.archive_project(project_id, actor)
