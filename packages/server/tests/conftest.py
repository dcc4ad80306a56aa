"""
Shared fixtures: a throwaway SQLite database per test and a MilestoneService
bound to it with an in-memory notification sink.
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.auth import ActorContext
from app.core.config import Settings
from app.core.database import create_session_factory, init_db
from app.services.milestones import MilestoneService
from app.services.notifications import Notification, NotificationDispatcher
from milestage_shared.schemas.common import PaymentChannel
from milestage_shared.schemas.projects import ProjectCreate, ProjectRead
from milestage_shared.schemas.stages import DeliverableCreate, StageCreate


class RecordingSink:
    """Keeps every notification it is sent."""

    name = "recording"

    def __init__(self):
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'milestage.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings():
    return Settings(transaction_max_attempts=5, transaction_backoff_seconds=0.01)


@pytest.fixture
def service(session_factory, sink, settings):
    return MilestoneService(session_factory, NotificationDispatcher([sink]), settings)


@pytest.fixture
def freelancer():
    return ActorContext.freelancer(uuid.uuid4())


@pytest.fixture
def make_project(service, freelancer):
    """Create a project; stages default to two plain milestones."""

    async def _make(
        stages: list[StageCreate] | None = None,
        down_payment: int | None = None,
        owner: ActorContext | None = None,
    ) -> ProjectRead:
        body = ProjectCreate(
            name="Brand refresh",
            client_name="Ada",
            client_email="ada@example.com",
            stages=stages or [
                StageCreate(name="Concepts", amount=1000, revisions_included=2, extension_price=150),
                StageCreate(name="Final files", amount=2000, revisions_included=2, extension_price=150),
            ],
            down_payment=down_payment,
        )
        return await service.create_project(body, owner or freelancer)

    return _make


def deliverable(n: int = 1) -> DeliverableCreate:
    return DeliverableCreate(url=f"https://files.example.com/v{n}.pdf", title=f"Draft {n}")


async def pay_stage(service, stage_id, amount, client, freelancer):
    """Client claims, freelancer verifies. Returns the VerifyResult."""
    claim = await service.submit_payment_claim(stage_id, amount, PaymentChannel.BANK_TRANSFER, client)
    return await service.verify_payment_claim(claim.id, freelancer)
