"""
Tests for the project unlock coordinator.

Tests cover:
- Successor selection (stage 0 always hands over to stage 1)
- Exactly one unlock per completed predecessor
- Project completion after the final stage
"""

from __future__ import annotations

import uuid

import pytest

from app.core.auth import ActorContext
from app.core.errors import InvalidState
from app.models.stage import Stage
from app.services import unlock
from app.services.stages import get_project
from milestage_shared.schemas.common import ProjectStatus, StageStatus
from milestage_shared.schemas.stages import StageCreate

from conftest import deliverable, pay_stage


def stage(number: int, status: str = "locked") -> Stage:
    return Stage(project_id=uuid.uuid4(), stage_number=number, name=f"Stage {number}", status=status)


class TestFindSuccessor:
    def test_next_by_number(self):
        stages = [stage(3), stage(2)]
        assert unlock.find_successor(stage(1), stages).stage_number == 2

    def test_gaps_in_numbering(self):
        stages = [stage(5), stage(9)]
        assert unlock.find_successor(stage(2), stages).stage_number == 5

    def test_last_stage_has_no_successor(self):
        assert unlock.find_successor(stage(3), [stage(1), stage(2)]) is None

    def test_down_payment_unlocks_stage_one(self):
        stages = [stage(2), stage(1), stage(3)]
        assert unlock.find_successor(stage(0), stages).stage_number == 1


class TestUnlockFlow:
    @pytest.mark.asyncio
    async def test_down_payment_unlocks_stage_one_only(self, service, make_project, freelancer):
        project = await make_project(down_payment=500)
        client = ActorContext.client(project.id)
        down, first, second = project.stages

        assert down.stage_number == 0
        assert down.status == StageStatus.ACTIVE
        assert down.revisions_included == 0
        assert first.status == StageStatus.LOCKED
        assert project.total_amount == 3500

        result = await pay_stage(service, down.id, 500, client, freelancer)

        assert result.unlocked_stage_id == first.id
        read = await service.get_project(project.id, freelancer)
        assert [s.status for s in read.stages] == [
            StageStatus.COMPLETED,
            StageStatus.ACTIVE,
            StageStatus.LOCKED,
        ]

    @pytest.mark.asyncio
    async def test_down_payment_cannot_be_delivered_or_revised(self, service, make_project, freelancer):
        project = await make_project(down_payment=500)
        client = ActorContext.client(project.id)
        down_id = project.stages[0].id
        with pytest.raises(InvalidState):
            await service.deliver_stage(down_id, [deliverable()], freelancer)
        with pytest.raises(InvalidState):
            await service.request_revision(down_id, "Down payments have no work", client)

    @pytest.mark.asyncio
    async def test_full_project_completes(self, service, make_project, freelancer, sink):
        project = await make_project(stages=[
            StageCreate(name="One", amount=100),
            StageCreate(name="Two", amount=200),
            StageCreate(name="Three", amount=300),
        ])
        client = ActorContext.client(project.id)

        for s in project.stages:
            await service.deliver_stage(s.id, [deliverable()], freelancer)
            await service.approve_stage(s.id, client)
            result = await pay_stage(service, s.id, s.amount, client, freelancer)

        assert result.project_completed is True
        assert result.unlocked_stage_id is None

        read = await service.get_project(project.id, freelancer)
        assert read.status == ProjectStatus.COMPLETED
        assert all(s.status == StageStatus.COMPLETED for s in read.stages)

        unlocked = await service.list_project_events(project.id, freelancer, "stage.unlocked")
        assert len(unlocked) == 2
        completed = await service.list_project_events(project.id, freelancer, "project.completed")
        assert len(completed) == 1
        assert sink.kinds().count("project_completed") == 1

    @pytest.mark.asyncio
    async def test_repeat_call_is_noop(self, session_factory, make_project, freelancer, service):
        """Invoking the coordinator again for the same completed stage changes nothing."""
        project = await make_project()
        client = ActorContext.client(project.id)
        first = project.stages[0]
        await service.deliver_stage(first.id, [deliverable()], freelancer)
        await pay_stage(service, first.id, first.amount, client, freelancer)

        async with session_factory() as session:
            async with session.begin():
                completed = await session.get(Stage, first.id)
                proj = await get_project(session, project.id)
                result = await unlock.on_stage_completed(session, completed, proj, freelancer)

        assert result.unlocked_stage is None
        assert result.project_completed is False
        unlocked = await service.list_project_events(project.id, freelancer, "stage.unlocked")
        assert len(unlocked) == 1

    @pytest.mark.asyncio
    async def test_requires_completed_stage(self, session_factory, make_project, freelancer):
        project = await make_project()
        async with session_factory() as session:
            active = await session.get(Stage, project.stages[0].id)
            proj = await get_project(session, project.id)
            with pytest.raises(InvalidState):
                await unlock.on_stage_completed(session, active, proj, freelancer)
