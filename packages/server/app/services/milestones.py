"""
Milestone service boundary.

Each public coroutine is one user-visible operation: it runs the
underlying service function in exactly one transaction (retried on storage
conflicts), builds the response inside that transaction, and only after
commit hands the resulting notifications to the dispatcher.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.auth import ActorContext, ensure_actor
from app.core.config import Settings, get_settings
from app.core.events import list_events
from app.core.transactions import run_in_transaction
from app.models.base import utcnow
from app.models.project import Project
from app.models.stage import Stage
from app.services import payments, projects, stages
from app.services.notifications import Notification, NotificationDispatcher, build_dispatcher
from milestage_shared.schemas.common import ActorRole, ClaimKind, PaymentChannel, ProjectStatus
from milestage_shared.schemas.payments import ClaimRead, VerifyResult
from milestage_shared.schemas.projects import (
    PaymentReminder,
    ProjectCreate,
    ProjectRead,
    StageEventRead,
)
from milestage_shared.schemas.stages import (
    CreditBalance,
    DeliverableCreate,
    DeliverableRead,
    StageRead,
)

log = structlog.get_logger()

T = TypeVar("T")


def _notification(
    kind: str,
    recipient: str,
    project: Project,
    stage: Optional[Stage] = None,
    **data,
) -> Notification:
    payload = {
        "projectName": project.name,
        "clientName": project.client_name,
        "clientEmail": project.client_email,
        "currency": project.currency,
        "shareCode": project.share_code,
    }
    if stage is not None:
        payload.update(
            stageName=stage.name,
            stageNumber=stage.stage_number,
            amount=stage.amount,
        )
    payload.update(data)
    return Notification(
        kind=kind,
        project_id=project.id,
        recipient=recipient,
        stage_id=stage.id if stage is not None else None,
        data=payload,
    )


async def load_stage_read(session: AsyncSession, stage: Stage) -> StageRead:
    return projects.stage_read(
        stage,
        await stages.list_deliverables(session, [stage.id]),
        await stages.list_revisions(session, [stage.id]),
        await payments.list_claims(session, [stage.id]),
    )


class MilestoneService:
    """Transactional entry point for every stage, payment and project operation."""

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()

    async def close(self) -> None:
        await self._dispatcher.close()

    async def _run(
        self,
        name: str,
        operation: Callable[[AsyncSession, list[Notification]], Awaitable[T]],
    ) -> T:
        # Rebuilt on every attempt so a retried operation never double-notifies
        pending: list[Notification] = []

        async def attempt(session: AsyncSession) -> T:
            pending.clear()
            return await operation(session, pending)

        result = await run_in_transaction(
            self._session_factory,
            attempt,
            name=name,
            max_attempts=self._settings.transaction_max_attempts,
            backoff_seconds=self._settings.transaction_backoff_seconds,
        )
        if pending:
            await self._dispatcher.dispatch(pending)
        return result

    # -----------------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------------

    async def create_project(self, project_in: ProjectCreate, actor: ActorContext) -> ProjectRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> ProjectRead:
            project = await projects.create_project(session, project_in, actor)
            return await projects.enrich_project(session, project)

        read = await self._run("create_project", op)
        log.info("project.created", project_id=str(read.id), stages=len(read.stages))
        return read

    async def get_project(self, project_id: uuid.UUID, actor: ActorContext) -> ProjectRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> ProjectRead:
            project = await projects.get_project_for_actor(session, project_id, actor)
            return await projects.enrich_project(
                session, project, include_share_code=actor.role == ActorRole.FREELANCER
            )

        return await self._run("get_project", op)

    async def get_portal(self, share_code: str) -> ProjectRead:
        """Client portal view: everything but the share code itself."""

        async def op(session: AsyncSession, notes: list[Notification]) -> ProjectRead:
            project = await projects.get_project_by_share_code(session, share_code)
            return await projects.enrich_project(session, project, include_share_code=False)

        return await self._run("get_portal", op)

    async def pause_project(self, project_id: uuid.UUID, actor: ActorContext) -> ProjectRead:
        return await self._set_project_status(project_id, ProjectStatus.PAUSED, actor)

    async def resume_project(self, project_id: uuid.UUID, actor: ActorContext) -> ProjectRead:
        return await self._set_project_status(project_id, ProjectStatus.ACTIVE, actor)

    async def archive_project(self, project_id: uuid.UUID, actor: ActorContext) -> ProjectRead:
        return await self._set_project_status(project_id, ProjectStatus.ARCHIVED, actor)

    async def _set_project_status(
        self, project_id: uuid.UUID, to_status: ProjectStatus, actor: ActorContext
    ) -> ProjectRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> ProjectRead:
            project = await projects.set_project_status(session, project_id, to_status, actor)
            return await projects.enrich_project(session, project)

        return await self._run(f"project_{to_status.value}", op)

    async def list_payment_reminders(
        self, actor: ActorContext, now: datetime | None = None
    ) -> list[PaymentReminder]:
        async def op(session: AsyncSession, notes: list[Notification]) -> list[PaymentReminder]:
            return await projects.list_payment_reminders(session, actor, now or utcnow())

        return await self._run("list_payment_reminders", op)

    async def list_project_events(
        self, project_id: uuid.UUID, actor: ActorContext, event_type: Optional[str] = None
    ) -> list[StageEventRead]:
        async def op(session: AsyncSession, notes: list[Notification]) -> list[StageEventRead]:
            await projects.get_project_for_actor(session, project_id, actor)
            events = await list_events(session, project_id, event_type)
            return [StageEventRead.model_validate(e, from_attributes=True) for e in events]

        return await self._run("list_project_events", op)

    # -----------------------------------------------------------------------
    # Stage lifecycle
    # -----------------------------------------------------------------------

    async def get_credit_balance(self, stage_id: uuid.UUID, actor: ActorContext) -> CreditBalance:
        async def op(session: AsyncSession, notes: list[Notification]) -> CreditBalance:
            stage = await stages.get_stage(session, stage_id)
            project = await stages.get_project(session, stage.project_id)
            ensure_actor(actor, project, ActorRole.FREELANCER, ActorRole.CLIENT)
            return projects.credit_balance(stage)

        return await self._run("get_credit_balance", op)

    async def start_stage(self, stage_id: uuid.UUID, actor: ActorContext) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            stage = await stages.start_stage(session, stage_id, actor)
            return await load_stage_read(session, stage)

        return await self._run("start_stage", op)

    async def add_deliverable(
        self, stage_id: uuid.UUID, body: DeliverableCreate, actor: ActorContext
    ) -> DeliverableRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> DeliverableRead:
            d = await stages.add_deliverable(session, stage_id, body, actor)
            return DeliverableRead(
                id=d.id, stage_id=d.stage_id, url=d.url, title=d.title, created_at=d.created_at
            )

        return await self._run("add_deliverable", op)

    async def remove_deliverable(self, deliverable_id: uuid.UUID, actor: ActorContext) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            stage = await stages.remove_deliverable(session, deliverable_id, actor)
            return await load_stage_read(session, stage)

        return await self._run("remove_deliverable", op)

    async def deliver_stage(
        self,
        stage_id: uuid.UUID,
        deliverables: Sequence[DeliverableCreate],
        actor: ActorContext,
    ) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            stage = await stages.deliver_stage(session, stage_id, deliverables, actor)
            project = await stages.get_project(session, stage.project_id)
            read = await load_stage_read(session, stage)
            notes.append(
                _notification(
                    "stage_delivered", "client", project, stage,
                    deliverableCount=len(read.deliverables),
                    portalUrl=projects.portal_url(project, self._settings.portal_base_url),
                )
            )
            return read

        return await self._run("deliver_stage", op)

    async def request_revision(
        self, stage_id: uuid.UUID, feedback: str, actor: ActorContext
    ) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            stage, revision = await stages.request_revision(session, stage_id, feedback, actor)
            project = await stages.get_project(session, stage.project_id)
            read = await load_stage_read(session, stage)
            notes.append(
                _notification(
                    "revision_requested", "freelancer", project, stage,
                    feedback=revision.feedback,
                    revisionNumber=revision.sequence,
                    revisionsRemaining=read.credits.total_remaining,
                )
            )
            return read

        return await self._run("request_revision", op)

    async def approve_stage(self, stage_id: uuid.UUID, actor: ActorContext) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            stage = await stages.approve_stage(session, stage_id, actor)
            project = await stages.get_project(session, stage.project_id)
            notes.append(_notification("stage_approved", "freelancer", project, stage))
            return await load_stage_read(session, stage)

        return await self._run("approve_stage", op)

    async def log_manual_revision(self, stage_id: uuid.UUID, actor: ActorContext) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            stage, _pool = await stages.log_manual_revision(session, stage_id, actor)
            return await load_stage_read(session, stage)

        return await self._run("log_manual_revision", op)

    # -----------------------------------------------------------------------
    # Stage payments
    # -----------------------------------------------------------------------

    async def submit_payment_claim(
        self,
        stage_id: uuid.UUID,
        amount: int,
        channel: PaymentChannel,
        actor: ActorContext,
    ) -> ClaimRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> ClaimRead:
            claim = await payments.submit_claim(session, stage_id, amount, channel, actor)
            stage = await stages.get_stage(session, claim.stage_id)
            project = await stages.get_project(session, stage.project_id)
            notes.append(
                _notification(
                    "payment_claimed", "freelancer", project, stage,
                    referenceCode=claim.reference_code,
                    channel=claim.channel,
                )
            )
            return projects.claim_read(claim)

        return await self._run("submit_payment_claim", op)

    async def verify_payment_claim(self, claim_id: uuid.UUID, actor: ActorContext) -> VerifyResult:
        async def op(session: AsyncSession, notes: list[Notification]) -> VerifyResult:
            outcome = await payments.verify_claim(session, claim_id, actor)
            notes.extend(self._completion_notifications(outcome))
            return VerifyResult(
                stage_id=outcome.stage.id,
                claim_id=outcome.claim.id,
                unlocked_stage_id=outcome.unlocked_stage.id if outcome.unlocked_stage else None,
                project_completed=outcome.project_completed,
            )

        return await self._run("verify_payment_claim", op)

    async def reject_payment_claim(
        self, claim_id: uuid.UUID, reason: str, actor: ActorContext
    ) -> ClaimRead:
        return await self._reject(claim_id, reason, actor, ClaimKind.STAGE)

    async def confirm_external_payment(
        self,
        stage_id: uuid.UUID,
        external_reference: str,
        amount: int,
        actor: ActorContext,
        kind: ClaimKind = ClaimKind.STAGE,
    ) -> VerifyResult:
        """Card-processor confirmation; idempotent per external reference."""

        async def op(session: AsyncSession, notes: list[Notification]) -> VerifyResult:
            outcome = await payments.confirm_external(
                session, stage_id, kind, external_reference, amount, actor
            )
            if not outcome.already_processed:
                if kind == ClaimKind.EXTENSION:
                    notes.extend(self._extension_verified_notifications(outcome))
                else:
                    notes.extend(self._completion_notifications(outcome))
            return VerifyResult(
                stage_id=outcome.stage.id,
                claim_id=outcome.claim.id,
                unlocked_stage_id=outcome.unlocked_stage.id if outcome.unlocked_stage else None,
                project_completed=outcome.project_completed,
            )

        return await self._run("confirm_external_payment", op)

    def _completion_notifications(self, outcome: payments.ClaimOutcome) -> list[Notification]:
        notes = [
            _notification(
                "payment_received", "client", outcome.project, outcome.stage,
                referenceCode=outcome.claim.reference_code,
                nextStageName=outcome.unlocked_stage.name if outcome.unlocked_stage else None,
            )
        ]
        if outcome.project_completed:
            notes.append(
                _notification(
                    "project_completed", "client", outcome.project,
                    totalAmount=outcome.project.total_amount,
                )
            )
        return notes

    # -----------------------------------------------------------------------
    # Extensions
    # -----------------------------------------------------------------------

    async def submit_extension_claim(
        self,
        stage_id: uuid.UUID,
        amount: Optional[int],
        channel: PaymentChannel,
        actor: ActorContext,
    ) -> ClaimRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> ClaimRead:
            claim = await payments.submit_extension_claim(session, stage_id, amount, channel, actor)
            stage = await stages.get_stage(session, claim.stage_id)
            project = await stages.get_project(session, stage.project_id)
            notes.append(
                _notification(
                    "extension_claimed", "freelancer", project, stage,
                    referenceCode=claim.reference_code,
                    extensionAmount=claim.amount,
                )
            )
            return projects.claim_read(claim)

        return await self._run("submit_extension_claim", op)

    async def verify_extension_claim(self, claim_id: uuid.UUID, actor: ActorContext) -> StageRead:
        async def op(session: AsyncSession, notes: list[Notification]) -> StageRead:
            outcome = await payments.verify_extension_claim(session, claim_id, actor)
            notes.extend(self._extension_verified_notifications(outcome))
            return await load_stage_read(session, outcome.stage)

        return await self._run("verify_extension_claim", op)

    async def reject_extension_claim(
        self, claim_id: uuid.UUID, reason: str, actor: ActorContext
    ) -> ClaimRead:
        return await self._reject(claim_id, reason, actor, ClaimKind.EXTENSION)

    def _extension_verified_notifications(self, outcome: payments.ClaimOutcome) -> list[Notification]:
        return [
            _notification(
                "extension_verified", "client", outcome.project, outcome.stage,
                revisionsIncluded=outcome.stage.revisions_included,
                revisionsRemaining=projects.credit_balance(outcome.stage).total_remaining,
            )
        ]

    async def _reject(
        self, claim_id: uuid.UUID, reason: str, actor: ActorContext, kind: ClaimKind
    ) -> ClaimRead:
        kind_name = "payment" if kind == ClaimKind.STAGE else "extension"

        async def op(session: AsyncSession, notes: list[Notification]) -> ClaimRead:
            outcome = await payments.reject_claim(session, claim_id, reason, actor, kind)
            notes.append(
                _notification(
                    f"{kind_name}_rejected", "client", outcome.project, outcome.stage,
                    referenceCode=outcome.claim.reference_code,
                    reason=outcome.claim.rejection_reason,
                )
            )
            return projects.claim_read(outcome.claim)

        return await self._run(f"reject_{kind_name}_claim", op)


# ---------------------------------------------------------------------------
# Application-wide instance
# ---------------------------------------------------------------------------

_service: MilestoneService | None = None


def get_milestone_service() -> MilestoneService:
    """FastAPI dependency; tests override it with a service bound to their engine."""
    global _service
    if _service is None:
        from app.core.database import async_session_factory

        settings = get_settings()
        dispatcher = build_dispatcher(
            settings.notification_url, settings.notification_timeout_seconds
        )
        _service = MilestoneService(async_session_factory, dispatcher, settings)
    return _service


async def close_milestone_service() -> None:
    global _service
    if _service is not None:
        await _service.close()
        _service = None
