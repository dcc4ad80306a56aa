"""
Project unlock coordinator.

Given a stage whose payment has just been verified, decide what happens to
the rest of the project: activate the next locked stage, or complete the
project when the final stage is paid. Safe to call repeatedly for the same
completed stage; only the first call has an effect.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.auth import ActorContext
from app.core.errors import InvalidState
from app.core.events import record_event
from app.models.project import Project
from app.models.stage import Stage
from milestage_shared.schemas.common import ProjectStatus, StageStatus

log = structlog.get_logger()


@dataclass
class UnlockResult:
    unlocked_stage: Optional[Stage] = None
    project_completed: bool = False


def find_successor(completed: Stage, stages: list[Stage]) -> Optional[Stage]:
    """Return the stage that follows completed, by stage_number.

    The down payment gate (stage 0) always hands over to stage 1.
    """
    if completed.stage_number == 0:
        return next((s for s in stages if s.stage_number == 1), None)

    later = [s for s in stages if s.stage_number > completed.stage_number]
    return min(later, key=lambda s: s.stage_number) if later else None


async def on_stage_completed(
    session: AsyncSession,
    stage: Stage,
    project: Project,
    actor: ActorContext,
) -> UnlockResult:
    if stage.status != StageStatus.COMPLETED.value:
        raise InvalidState("Only completed stages can unlock their successor")

    result = await session.execute(
        select(Stage)
        .where(Stage.project_id == project.id, Stage.id != stage.id)
        .order_by(Stage.stage_number)
        .with_for_update()
    )
    others = list(result.scalars().all())
    successor = find_successor(stage, others)

    if successor is not None:
        if successor.status != StageStatus.LOCKED.value:
            log.info(
                "unlock.noop",
                stage_id=str(stage.id),
                successor_id=str(successor.id),
                successor_status=successor.status,
            )
            return UnlockResult()

        successor.status = StageStatus.ACTIVE.value
        await record_event(
            session, project.id, "stage.unlocked", actor,
            stage_id=successor.id,
            payload={"predecessor_id": str(stage.id), "stage_number": successor.stage_number},
            dedupe_key=f"unlock:{stage.id}",
        )
        await session.flush()
        log.info(
            "unlock.stage_unlocked",
            project_id=str(project.id),
            predecessor_id=str(stage.id),
            stage_id=str(successor.id),
        )
        return UnlockResult(unlocked_stage=successor)

    if project.status == ProjectStatus.COMPLETED.value:
        return UnlockResult()

    project.status = ProjectStatus.COMPLETED.value
    await record_event(
        session, project.id, "project.completed", actor,
        stage_id=stage.id,
        payload={"final_stage_number": stage.stage_number},
        dedupe_key=f"complete:{project.id}",
    )
    await session.flush()
    log.info("unlock.project_completed", project_id=str(project.id))
    return UnlockResult(project_completed=True)
