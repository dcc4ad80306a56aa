"""
Stage service layer: the stage lifecycle state machine.

Handles:
- Loading stages with row locks and actor checks
- Status transitions validated against STAGE_TRANSITIONS
- Deliverables, delivery, approval
- Revision requests and manual revision logging (credit consumption)

Every function here runs inside the caller's transaction and only flushes;
committing (and retrying on version conflicts) is the caller's job.
"""

from __future__ import annotations

import uuid
from typing import Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.auth import ActorContext, ensure_actor
from app.core.errors import InvalidState, NoCreditsAvailable, NotFound, ValidationFailed
from app.core.events import record_event
from app.models.base import utcnow
from app.models.deliverable import Deliverable
from app.models.project import Project
from app.models.revision import Revision
from app.models.stage import Stage
from app.services import credits
from milestage_shared.schemas.common import (
    WORKABLE_STAGE_STATUSES,
    ActorRole,
    ProjectStatus,
    StageStatus,
)
from milestage_shared.schemas.stages import DeliverableCreate, validate_stage_transition

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def get_stage(
    session: AsyncSession, stage_id: uuid.UUID, *, for_update: bool = False
) -> Stage:
    stmt = select(Stage).where(Stage.id == stage_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    stage = result.scalar_one_or_none()
    if stage is None:
        raise NotFound("Stage not found")
    return stage


async def get_project(
    session: AsyncSession, project_id: uuid.UUID, *, for_update: bool = False
) -> Project:
    stmt = select(Project).where(Project.id == project_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFound("Project not found")
    return project


async def load_for_action(
    session: AsyncSession,
    stage_id: uuid.UUID,
    actor: ActorContext,
    *roles: ActorRole,
) -> tuple[Stage, Project]:
    """Lock the stage row, authorize the actor and check the project is running."""
    stage = await get_stage(session, stage_id, for_update=True)
    project = await get_project(session, stage.project_id)
    ensure_actor(actor, project, *roles)
    if project.status != ProjectStatus.ACTIVE.value:
        raise InvalidState(f"Project is {project.status}; stage actions are disabled")
    return stage, project


def transition(stage: Stage, to_status: StageStatus) -> StageStatus:
    """Move a stage to to_status or raise InvalidState. Returns the old status."""
    current = StageStatus(stage.status)
    valid, message = validate_stage_transition(current, to_status)
    if not valid:
        raise InvalidState(message)
    stage.status = to_status.value
    return current


def _ensure_workable(stage: Stage) -> None:
    if StageStatus(stage.status) not in WORKABLE_STAGE_STATUSES:
        raise InvalidState(f"Stage is {stage.status}; work on it is not possible")


async def count_deliverables(session: AsyncSession, stage_id: uuid.UUID) -> int:
    result = await session.execute(
        select(sa.func.count()).select_from(Deliverable).where(Deliverable.stage_id == stage_id)
    )
    return result.scalar_one()


async def list_deliverables(session: AsyncSession, stage_ids: Sequence[uuid.UUID]) -> list[Deliverable]:
    if not stage_ids:
        return []
    result = await session.execute(
        select(Deliverable)
        .where(Deliverable.stage_id.in_(stage_ids))
        .order_by(Deliverable.created_at)
    )
    return list(result.scalars().all())


async def list_revisions(session: AsyncSession, stage_ids: Sequence[uuid.UUID]) -> list[Revision]:
    if not stage_ids:
        return []
    result = await session.execute(
        select(Revision)
        .where(Revision.stage_id.in_(stage_ids))
        .order_by(Revision.stage_id, Revision.sequence)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Freelancer actions
# ---------------------------------------------------------------------------


async def start_stage(session: AsyncSession, stage_id: uuid.UUID, actor: ActorContext) -> Stage:
    """Mark work as underway (active or revision_requested -> in_progress)."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.FREELANCER)
    if stage.stage_number == 0:
        raise InvalidState("The down payment stage has no work to start")

    old = transition(stage, StageStatus.IN_PROGRESS)
    await record_event(
        session, project.id, "stage.started", actor,
        stage_id=stage.id, payload={"from_status": old.value},
    )
    await session.flush()
    return stage


async def add_deliverable(
    session: AsyncSession,
    stage_id: uuid.UUID,
    body: DeliverableCreate,
    actor: ActorContext,
) -> Deliverable:
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.FREELANCER)
    if stage.stage_number == 0:
        raise InvalidState("The down payment stage does not take deliverables")
    _ensure_workable(stage)

    deliverable = Deliverable(stage_id=stage.id, url=body.url, title=body.title)
    session.add(deliverable)

    # New work on a stage sent back for revision resumes it
    if stage.status == StageStatus.REVISION_REQUESTED.value:
        transition(stage, StageStatus.IN_PROGRESS)

    await record_event(
        session, project.id, "deliverable.added", actor,
        stage_id=stage.id, payload={"url": body.url, "title": body.title},
    )
    await session.flush()
    return deliverable


async def remove_deliverable(
    session: AsyncSession, deliverable_id: uuid.UUID, actor: ActorContext
) -> Stage:
    deliverable = await session.get(Deliverable, deliverable_id)
    if deliverable is None:
        raise NotFound("Deliverable not found")

    stage, project = await load_for_action(session, deliverable.stage_id, actor, ActorRole.FREELANCER)
    if stage.status not in (StageStatus.ACTIVE.value, StageStatus.IN_PROGRESS.value):
        raise InvalidState("Deliverables can only be removed before the stage is delivered")

    await session.delete(deliverable)
    await record_event(
        session, project.id, "deliverable.removed", actor,
        stage_id=stage.id, payload={"deliverable_id": str(deliverable_id)},
    )
    await session.flush()
    return stage


async def deliver_stage(
    session: AsyncSession,
    stage_id: uuid.UUID,
    deliverables: Sequence[DeliverableCreate],
    actor: ActorContext,
) -> Stage:
    """Submit work for client review. Requires at least one deliverable."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.FREELANCER)
    if stage.stage_number == 0:
        raise InvalidState("The down payment stage is paid, not delivered")

    for item in deliverables:
        session.add(Deliverable(stage_id=stage.id, url=item.url, title=item.title))
    if deliverables and stage.status == StageStatus.REVISION_REQUESTED.value:
        transition(stage, StageStatus.IN_PROGRESS)
    await session.flush()

    if await count_deliverables(session, stage.id) == 0:
        raise ValidationFailed("Add at least one deliverable before delivering the stage")

    old = transition(stage, StageStatus.DELIVERED)
    now = utcnow()
    stage.delivered_at = now

    # Close any revision rounds this delivery answers
    await session.execute(
        sa.update(Revision)
        .where(Revision.stage_id == stage.id, Revision.completed_at.is_(None))
        .values(completed_at=now)
        .execution_options(synchronize_session=False)
    )

    await record_event(
        session, project.id, "stage.delivered", actor,
        stage_id=stage.id, payload={"from_status": old.value},
    )
    await session.flush()
    log.info("stage.delivered", stage_id=str(stage.id), project_id=str(project.id))
    return stage


async def log_manual_revision(
    session: AsyncSession, stage_id: uuid.UUID, actor: ActorContext
) -> tuple[Stage, credits.CreditPool]:
    """Record a revision agreed out of band (e.g. over chat) against the credits."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.FREELANCER)
    _ensure_workable(stage)

    pool = credits.consume_one(stage)
    if stage.status != StageStatus.IN_PROGRESS.value:
        transition(stage, StageStatus.IN_PROGRESS)

    await record_event(
        session, project.id, "revision.logged", actor,
        stage_id=stage.id,
        payload={"pool": pool.value, "remaining": credits.remaining_total(stage)},
    )
    await session.flush()
    log.info("stage.manual_revision", stage_id=str(stage.id), pool=pool.value)
    return stage, pool


# ---------------------------------------------------------------------------
# Client actions
# ---------------------------------------------------------------------------


async def request_revision(
    session: AsyncSession,
    stage_id: uuid.UUID,
    feedback: str,
    actor: ActorContext,
) -> tuple[Stage, Revision]:
    """Send delivered work back with feedback, consuming one credit."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.CLIENT)
    if stage.stage_number == 0:
        raise InvalidState("The down payment stage cannot be revised")
    # Credits first: a request racing a successful one must see the exhausted pool
    if credits.remaining_total(stage) == 0:
        raise NoCreditsAvailable()
    if stage.status != StageStatus.DELIVERED.value:
        raise InvalidState(f"Revisions can only be requested on delivered work (stage is {stage.status})")

    credits.consume_one(stage)
    transition(stage, StageStatus.REVISION_REQUESTED)
    # Versioned stage UPDATE first, so a lost race surfaces as a stale row
    await session.flush()

    revision = Revision(
        stage_id=stage.id,
        sequence=credits.consumed_count(stage),
        feedback=feedback.strip(),
    )
    session.add(revision)

    await record_event(
        session, project.id, "revision.requested", actor,
        stage_id=stage.id,
        payload={"sequence": revision.sequence, "remaining": credits.remaining_total(stage)},
    )
    await session.flush()
    log.info("stage.revision_requested", stage_id=str(stage.id), sequence=revision.sequence)
    return stage, revision


async def approve_stage(session: AsyncSession, stage_id: uuid.UUID, actor: ActorContext) -> Stage:
    """Acknowledge delivered work. Moves no money; payment follows."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.CLIENT)
    transition(stage, StageStatus.APPROVED)
    stage.approved_at = utcnow()

    await record_event(session, project.id, "stage.approved", actor, stage_id=stage.id)
    await session.flush()
    return stage
