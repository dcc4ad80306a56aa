"""
Project service layer: creation, read models and project status changes.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.auth import ActorContext, ensure_actor, generate_share_code
from app.core.config import get_settings
from app.core.errors import InvalidState, NotFound, Unauthorized
from app.core.events import record_event
from app.models.base import as_utc
from app.models.deliverable import Deliverable
from app.models.payment_claim import PaymentClaim
from app.models.project import Project
from app.models.revision import Revision
from app.models.stage import Stage
from app.services import credits
from app.services.payments import list_claims
from app.services.stages import get_project, list_deliverables, list_revisions
from milestage_shared.schemas.common import (
    ActorRole,
    ProjectStatus,
    ReminderTone,
    StageStatus,
)
from milestage_shared.schemas.payments import ClaimRead
from milestage_shared.schemas.projects import PaymentReminder, ProjectCreate, ProjectRead
from milestage_shared.schemas.stages import (
    CreditBalance,
    DeliverableRead,
    RevisionRead,
    StageRead,
)

settings = get_settings()

# Allowed project status changes requested by the owner
PROJECT_STATUS_TRANSITIONS = {
    ProjectStatus.ACTIVE: {ProjectStatus.PAUSED, ProjectStatus.ARCHIVED},
    ProjectStatus.PAUSED: {ProjectStatus.ACTIVE, ProjectStatus.ARCHIVED},
    ProjectStatus.COMPLETED: {ProjectStatus.ARCHIVED},
    ProjectStatus.ARCHIVED: set(),
}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def credit_balance(stage: Stage) -> CreditBalance:
    return CreditBalance(
        stage_id=stage.id,
        revisions_included=stage.revisions_included,
        revisions_used=stage.revisions_used,
        extension_purchased=stage.extension_purchased,
        extension_revisions_used=stage.extension_revisions_used,
        included_remaining=credits.remaining_included(stage),
        extension_remaining=credits.remaining_extension(stage),
        total_remaining=credits.remaining_total(stage),
    )


def claim_read(claim: PaymentClaim) -> ClaimRead:
    return ClaimRead(
        id=claim.id,
        stage_id=claim.stage_id,
        kind=claim.kind,
        amount=claim.amount,
        channel=claim.channel,
        reference_code=claim.reference_code,
        status=claim.status,
        marked_paid_at=claim.marked_paid_at,
        verified_at=claim.verified_at,
        rejected_at=claim.rejected_at,
        rejection_reason=claim.rejection_reason,
    )


def stage_read(
    stage: Stage,
    deliverables: Sequence[Deliverable] = (),
    revisions: Sequence[Revision] = (),
    claims: Sequence[PaymentClaim] = (),
) -> StageRead:
    return StageRead(
        id=stage.id,
        project_id=stage.project_id,
        stage_number=stage.stage_number,
        name=stage.name,
        amount=stage.amount,
        status=stage.status,
        payment_status=stage.payment_status,
        revisions_included=stage.revisions_included,
        revisions_used=stage.revisions_used,
        extension_purchased=stage.extension_purchased,
        extension_price=stage.extension_price,
        extension_revisions_used=stage.extension_revisions_used,
        delivered_at=stage.delivered_at,
        approved_at=stage.approved_at,
        payment_received_at=stage.payment_received_at,
        deliverables=[
            DeliverableRead(
                id=d.id, stage_id=d.stage_id, url=d.url, title=d.title, created_at=d.created_at
            )
            for d in deliverables
        ],
        revisions=[
            RevisionRead(
                id=r.id,
                stage_id=r.stage_id,
                sequence=r.sequence,
                feedback=r.feedback,
                requested_at=r.requested_at,
                completed_at=r.completed_at,
            )
            for r in revisions
        ],
        claims=[claim_read(c) for c in claims],
        credits=credit_balance(stage),
        created_at=stage.created_at,
        updated_at=stage.updated_at,
    )


async def list_stages(session: AsyncSession, project_id: uuid.UUID) -> list[Stage]:
    result = await session.execute(
        select(Stage).where(Stage.project_id == project_id).order_by(Stage.stage_number)
    )
    return list(result.scalars().all())


async def enrich_project(
    session: AsyncSession, project: Project, *, include_share_code: bool = True
) -> ProjectRead:
    """Convert a Project ORM object to a ProjectRead with all stage data."""
    stages = await list_stages(session, project.id)
    stage_ids = [s.id for s in stages]

    by_stage: dict[str, dict[uuid.UUID, list]] = {
        "deliverables": defaultdict(list),
        "revisions": defaultdict(list),
        "claims": defaultdict(list),
    }
    for d in await list_deliverables(session, stage_ids):
        by_stage["deliverables"][d.stage_id].append(d)
    for r in await list_revisions(session, stage_ids):
        by_stage["revisions"][r.stage_id].append(r)
    for c in await list_claims(session, stage_ids):
        by_stage["claims"][c.stage_id].append(c)

    return ProjectRead(
        id=project.id,
        owner_id=project.owner_id,
        name=project.name,
        client_name=project.client_name,
        client_email=project.client_email,
        currency=project.currency,
        status=project.status,
        total_amount=project.total_amount,
        share_code=project.share_code if include_share_code else None,
        stages=[
            stage_read(
                s,
                by_stage["deliverables"][s.id],
                by_stage["revisions"][s.id],
                by_stage["claims"][s.id],
            )
            for s in stages
        ],
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_project_for_actor(
    session: AsyncSession, project_id: uuid.UUID, actor: ActorContext
) -> Project:
    project = await get_project(session, project_id)
    ensure_actor(actor, project, ActorRole.FREELANCER, ActorRole.CLIENT)
    return project


async def get_project_by_share_code(session: AsyncSession, share_code: str) -> Project:
    result = await session.execute(select(Project).where(Project.share_code == share_code))
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFound("Project not found")
    return project


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def create_project(
    session: AsyncSession,
    project_in: ProjectCreate,
    actor: ActorContext,
) -> Project:
    """Create a project with its stages; the first stage starts active."""
    if actor.role != ActorRole.FREELANCER:
        raise Unauthorized("Only freelancers can create projects")

    project = Project(
        owner_id=actor.user_id,
        name=project_in.name,
        client_name=project_in.client_name,
        client_email=project_in.client_email,
        currency=project_in.currency.upper(),
        share_code=generate_share_code(),
        status=ProjectStatus.ACTIVE.value,
    )
    session.add(project)
    await session.flush()

    stages: list[Stage] = []
    if project_in.down_payment:
        stages.append(
            Stage(
                project_id=project.id,
                stage_number=0,
                name="Down Payment",
                amount=project_in.down_payment,
                revisions_included=0,
            )
        )
    for number, stage_in in enumerate(project_in.stages, start=1):
        stages.append(
            Stage(
                project_id=project.id,
                stage_number=number,
                name=stage_in.name,
                amount=stage_in.amount,
                revisions_included=stage_in.revisions_included,
                extension_price=stage_in.extension_price,
                extension_purchased=stage_in.extension_purchased,
            )
        )

    stages[0].status = StageStatus.ACTIVE.value
    for stage in stages:
        session.add(stage)
    project.total_amount = sum(s.amount for s in stages)

    await record_event(
        session, project.id, "project.created", actor,
        payload={"stage_count": len(stages), "total_amount": project.total_amount},
    )
    await session.flush()
    return project


async def set_project_status(
    session: AsyncSession,
    project_id: uuid.UUID,
    to_status: ProjectStatus,
    actor: ActorContext,
) -> Project:
    """Pause, resume or archive a project."""
    project = await get_project(session, project_id, for_update=True)
    ensure_actor(actor, project, ActorRole.FREELANCER)

    current = ProjectStatus(project.status)
    if to_status not in PROJECT_STATUS_TRANSITIONS[current]:
        raise InvalidState(f"Cannot change project from {current.value} to {to_status.value}")

    project.status = to_status.value
    await record_event(
        session, project.id, "project.status_changed", actor,
        payload={"from_status": current.value, "to_status": to_status.value},
    )
    await session.flush()
    return project


# ---------------------------------------------------------------------------
# Payment reminders
# ---------------------------------------------------------------------------


def reminder_tone(days_overdue: int) -> ReminderTone:
    if days_overdue >= settings.reminder_urgent_days:
        return ReminderTone.URGENT
    if days_overdue >= settings.reminder_followup_days:
        return ReminderTone.FOLLOWUP
    return ReminderTone.FRIENDLY


async def list_payment_reminders(
    session: AsyncSession, actor: ActorContext, now: datetime
) -> list[PaymentReminder]:
    """Approved stages still waiting for money, oldest approval first."""
    if actor.role != ActorRole.FREELANCER:
        raise Unauthorized("Only freelancers can list payment reminders")

    result = await session.execute(
        select(Stage, Project)
        .join(Project, Project.id == Stage.project_id)
        .where(
            Project.owner_id == actor.user_id,
            Project.status == ProjectStatus.ACTIVE.value,
            Stage.approved_at.is_not(None),
            Stage.payment_status != "received",
            Stage.status.not_in([StageStatus.LOCKED.value, StageStatus.COMPLETED.value]),
        )
    )

    reminders = []
    for stage, project in result.all():
        approved_at = as_utc(stage.approved_at)
        days = max(0, (as_utc(now) - approved_at).days)
        reminders.append(
            PaymentReminder(
                stage_id=stage.id,
                stage_number=stage.stage_number,
                stage_name=stage.name,
                amount=stage.amount,
                currency=project.currency,
                project_id=project.id,
                project_name=project.name,
                client_name=project.client_name,
                client_email=project.client_email,
                approved_at=approved_at,
                days_since_approved=days,
                tone=reminder_tone(days),
            )
        )

    reminders.sort(key=lambda r: r.approved_at)
    return reminders


def portal_url(project: Project, base_url: Optional[str] = None) -> str:
    return f"{(base_url or settings.portal_base_url).rstrip('/')}/{project.share_code}"
