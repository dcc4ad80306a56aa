"""
Payment claim protocol: "mark paid" by the client, then verify/reject by the
freelancer.

The same two-phase handshake serves two ledgers scoped by ``kind``:

- stage: verifying completes the stage and hands over to the unlock
  coordinator.
- extension: verifying grants one included revision on the stage.

A trusted card-processor path (confirm_external) records an already
verified claim keyed by the processor's reference, which makes repeated
deliveries of the same payment event harmless.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.auth import ActorContext, ensure_actor
from app.core.errors import (
    AlreadyRejected,
    AlreadyVerified,
    DuplicateClaim,
    InvalidState,
    NotFound,
    ValidationFailed,
)
from app.core.events import record_event
from app.core.transactions import TransientConflict
from app.models.base import utcnow
from app.models.payment_claim import PaymentClaim
from app.models.project import Project
from app.models.stage import Stage
from app.services import credits, unlock
from app.services.stages import get_project, get_stage, load_for_action, transition
from milestage_shared.schemas.common import (
    ActorRole,
    ClaimKind,
    ClaimStatus,
    PaymentChannel,
    PaymentStatus,
    ProjectStatus,
    StageStatus,
)

log = structlog.get_logger()

EXTERNAL_REFERENCE_PREFIX = "STRIPE"

# Stage statuses from which money can be claimed for the stage itself
_PAYABLE_STATUSES = {StageStatus.DELIVERED.value, StageStatus.APPROVED.value}

# Stage statuses on which an extension can still be bought
_EXTENSIBLE_STATUSES = {
    StageStatus.ACTIVE.value,
    StageStatus.IN_PROGRESS.value,
    StageStatus.DELIVERED.value,
    StageStatus.REVISION_REQUESTED.value,
    StageStatus.APPROVED.value,
}


@dataclass
class ClaimOutcome:
    """Result of verifying or externally confirming a claim."""

    claim: PaymentClaim
    stage: Stage
    project: Project
    unlocked_stage: Optional[Stage] = None
    project_completed: bool = False
    already_processed: bool = False
    superseded: list[PaymentClaim] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_reference_code(stage: Stage, kind: ClaimKind) -> str:
    """Human-readable code the client quotes on the transfer: PREFIX-STAGEID8-NONCE."""
    prefix = "EXT" if kind == ClaimKind.EXTENSION else f"STAGE{stage.stage_number}"
    stage_part = stage.id.hex[:8].upper()
    nonce = secrets.token_hex(3).upper()
    return f"{prefix}-{stage_part}-{nonce}"


def external_reference_code(external_reference: str) -> str:
    return f"{EXTERNAL_REFERENCE_PREFIX}-{external_reference}"


async def get_claim(
    session: AsyncSession,
    claim_id: uuid.UUID,
    kind: ClaimKind,
    *,
    for_update: bool = False,
) -> PaymentClaim:
    stmt = select(PaymentClaim).where(PaymentClaim.id == claim_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    claim = result.scalar_one_or_none()
    if claim is None or claim.kind != kind.value:
        raise NotFound("Payment claim not found")
    return claim


async def get_outstanding_claim(
    session: AsyncSession, stage_id: uuid.UUID, kind: ClaimKind
) -> Optional[PaymentClaim]:
    result = await session.execute(
        select(PaymentClaim).where(
            PaymentClaim.stage_id == stage_id,
            PaymentClaim.kind == kind.value,
            PaymentClaim.status == ClaimStatus.MARKED_PAID.value,
        )
    )
    return result.scalar_one_or_none()


async def list_claims(session: AsyncSession, stage_ids: list[uuid.UUID]) -> list[PaymentClaim]:
    if not stage_ids:
        return []
    result = await session.execute(
        select(PaymentClaim)
        .where(PaymentClaim.stage_id.in_(stage_ids))
        .order_by(PaymentClaim.marked_paid_at)
    )
    return list(result.scalars().all())


def _ensure_open(claim: PaymentClaim) -> None:
    if claim.status == ClaimStatus.VERIFIED.value:
        raise AlreadyVerified("This payment has already been verified")
    if claim.status == ClaimStatus.REJECTED.value:
        raise AlreadyRejected("This payment has already been rejected")


async def _insert_claim(session: AsyncSession, claim: PaymentClaim) -> PaymentClaim:
    """Insert relying on the unique constraints, not on the pre-check alone."""
    session.add(claim)
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateClaim("A payment for this stage is already awaiting verification")
    return claim


async def _insert_external_claim(session: AsyncSession, claim: PaymentClaim) -> PaymentClaim:
    """Insert a processor-confirmed claim; a lost race on its reference is retried."""
    session.add(claim)
    try:
        await session.flush()
    except IntegrityError as exc:
        # The retry finds the winner's claim and returns the original outcome
        raise TransientConflict(
            f"External reference {claim.reference_code} confirmed concurrently"
        ) from exc
    return claim


async def _load_claim_context(
    session: AsyncSession,
    claim_id: uuid.UUID,
    kind: ClaimKind,
    actor: ActorContext,
) -> tuple[PaymentClaim, Stage, Project]:
    claim = await get_claim(session, claim_id, kind, for_update=True)
    stage = await get_stage(session, claim.stage_id, for_update=True)
    project = await get_project(session, stage.project_id)
    ensure_actor(actor, project, ActorRole.FREELANCER)
    return claim, stage, project


def _complete_stage(stage: Stage) -> None:
    stage.status = StageStatus.COMPLETED.value
    stage.payment_status = PaymentStatus.RECEIVED.value
    stage.payment_received_at = utcnow()


# ---------------------------------------------------------------------------
# Submission (client)
# ---------------------------------------------------------------------------


async def submit_claim(
    session: AsyncSession,
    stage_id: uuid.UUID,
    amount: int,
    channel: PaymentChannel,
    actor: ActorContext,
) -> PaymentClaim:
    """Client asserts the stage payment was sent."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.CLIENT)

    if await get_outstanding_claim(session, stage.id, ClaimKind.STAGE) is not None:
        raise DuplicateClaim("A payment for this stage is already awaiting verification")

    payable = stage.status in _PAYABLE_STATUSES or (
        stage.stage_number == 0 and stage.status == StageStatus.ACTIVE.value
    )
    if not payable:
        raise InvalidState(f"Stage is {stage.status}; payment is not due yet")
    if amount != stage.amount:
        raise ValidationFailed(f"Payment amount must be {stage.amount}")

    claim = PaymentClaim(
        stage_id=stage.id,
        kind=ClaimKind.STAGE.value,
        amount=amount,
        channel=channel.value,
        reference_code=generate_reference_code(stage, ClaimKind.STAGE),
        stage_status_before=stage.status,
    )

    transition(stage, StageStatus.PAYMENT_PENDING)
    stage.payment_status = PaymentStatus.PENDING.value
    if stage.approved_at is None:
        stage.approved_at = utcnow()

    await _insert_claim(session, claim)
    await record_event(
        session, project.id, "payment.claimed", actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "reference_code": claim.reference_code, "amount": amount},
    )
    await session.flush()
    log.info("payment.claim_submitted", stage_id=str(stage.id), reference_code=claim.reference_code)
    return claim


async def submit_extension_claim(
    session: AsyncSession,
    stage_id: uuid.UUID,
    amount: Optional[int],
    channel: PaymentChannel,
    actor: ActorContext,
) -> PaymentClaim:
    """Client asserts an extra-revision purchase was paid. Stage status is untouched."""
    stage, project = await load_for_action(session, stage_id, actor, ActorRole.CLIENT)

    if stage.stage_number == 0:
        raise InvalidState("The down payment stage does not carry revisions")
    if stage.status not in _EXTENSIBLE_STATUSES:
        raise InvalidState(f"Stage is {stage.status}; extensions can no longer be bought")
    if await get_outstanding_claim(session, stage.id, ClaimKind.EXTENSION) is not None:
        raise DuplicateClaim("An extension payment for this stage is already awaiting verification")

    price = stage.extension_price if amount is None else amount
    if price <= 0:
        raise ValidationFailed("This stage has no extension price")
    if stage.extension_price > 0 and price != stage.extension_price:
        raise ValidationFailed(f"Extension amount must be {stage.extension_price}")

    claim = PaymentClaim(
        stage_id=stage.id,
        kind=ClaimKind.EXTENSION.value,
        amount=price,
        channel=channel.value,
        reference_code=generate_reference_code(stage, ClaimKind.EXTENSION),
    )
    await _insert_claim(session, claim)
    await record_event(
        session, project.id, "extension.claimed", actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "reference_code": claim.reference_code, "amount": price},
    )
    await session.flush()
    log.info("payment.extension_claim_submitted", stage_id=str(stage.id), reference_code=claim.reference_code)
    return claim


# ---------------------------------------------------------------------------
# Verification / rejection (freelancer)
# ---------------------------------------------------------------------------


async def verify_claim(
    session: AsyncSession, claim_id: uuid.UUID, actor: ActorContext
) -> ClaimOutcome:
    """Confirm a stage payment: claim verified, stage completed, successor unlocked."""
    claim, stage, project = await _load_claim_context(session, claim_id, ClaimKind.STAGE, actor)
    _ensure_open(claim)

    if project.status != ProjectStatus.ACTIVE.value:
        raise InvalidState(f"Project is {project.status}; payments cannot be verified")

    claim.status = ClaimStatus.VERIFIED.value
    claim.verified_at = utcnow()
    transition(stage, StageStatus.COMPLETED)
    _complete_stage(stage)
    await session.flush()

    await record_event(
        session, project.id, "payment.verified", actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "reference_code": claim.reference_code, "amount": claim.amount},
    )
    result = await unlock.on_stage_completed(session, stage, project, actor)
    await session.flush()

    log.info(
        "payment.claim_verified",
        claim_id=str(claim.id),
        stage_id=str(stage.id),
        unlocked_stage_id=str(result.unlocked_stage.id) if result.unlocked_stage else None,
        project_completed=result.project_completed,
    )
    return ClaimOutcome(
        claim=claim,
        stage=stage,
        project=project,
        unlocked_stage=result.unlocked_stage,
        project_completed=result.project_completed,
    )


async def verify_extension_claim(
    session: AsyncSession, claim_id: uuid.UUID, actor: ActorContext
) -> ClaimOutcome:
    """Confirm an extension purchase: one more included revision on the stage."""
    claim, stage, project = await _load_claim_context(session, claim_id, ClaimKind.EXTENSION, actor)
    _ensure_open(claim)

    if stage.status == StageStatus.COMPLETED.value:
        raise InvalidState("Stage is already completed; reject the extension instead")

    claim.status = ClaimStatus.VERIFIED.value
    claim.verified_at = utcnow()
    credits.grant_extension(stage)

    await record_event(
        session, project.id, "extension.verified", actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "revisions_included": stage.revisions_included},
    )
    await session.flush()
    log.info(
        "payment.extension_verified",
        claim_id=str(claim.id),
        stage_id=str(stage.id),
        revisions_included=stage.revisions_included,
    )
    return ClaimOutcome(claim=claim, stage=stage, project=project)


async def reject_claim(
    session: AsyncSession,
    claim_id: uuid.UUID,
    reason: str,
    actor: ActorContext,
    kind: ClaimKind = ClaimKind.STAGE,
) -> ClaimOutcome:
    """Mark a claim as not received and put the stage back where it was."""
    claim, stage, project = await _load_claim_context(session, claim_id, kind, actor)
    _ensure_open(claim)

    claim.status = ClaimStatus.REJECTED.value
    claim.rejected_at = utcnow()
    claim.rejection_reason = reason.strip()

    if kind == ClaimKind.STAGE:
        before = StageStatus(claim.stage_status_before or StageStatus.APPROVED.value)
        transition(stage, before)
        stage.payment_status = PaymentStatus.UNPAID.value
        if before != StageStatus.APPROVED:
            stage.approved_at = None

    event_type = "payment.rejected" if kind == ClaimKind.STAGE else "extension.rejected"
    await record_event(
        session, project.id, event_type, actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "reason": claim.rejection_reason},
    )
    await session.flush()
    log.info("payment.claim_rejected", claim_id=str(claim.id), kind=kind.value)
    return ClaimOutcome(claim=claim, stage=stage, project=project)


# ---------------------------------------------------------------------------
# Trusted external confirmation (card processor)
# ---------------------------------------------------------------------------


async def confirm_external(
    session: AsyncSession,
    stage_id: uuid.UUID,
    kind: ClaimKind,
    external_reference: str,
    amount: int,
    actor: ActorContext,
) -> ClaimOutcome:
    """Record a processor-confirmed payment, once per external reference."""
    reference_code = external_reference_code(external_reference)

    # Lock first so a concurrent delivery of the same event is seen below
    stage = await get_stage(session, stage_id, for_update=True)
    project = await get_project(session, stage.project_id)
    ensure_actor(actor, project, ActorRole.SYSTEM)

    result = await session.execute(
        select(PaymentClaim).where(PaymentClaim.reference_code == reference_code)
    )
    existing = result.scalar_one_or_none()

    if existing is not None:
        if existing.stage_id != stage.id or existing.kind != kind.value:
            raise ValidationFailed("External reference belongs to a different payment")
        log.info("payment.external_duplicate", reference_code=reference_code)
        return ClaimOutcome(claim=existing, stage=stage, project=project, already_processed=True)

    if kind == ClaimKind.EXTENSION:
        return await _confirm_external_extension(session, stage, project, reference_code, amount, actor)

    if stage.status == StageStatus.COMPLETED.value:
        raise AlreadyVerified("Payment for this stage has already been received")
    if stage.status not in _PAYABLE_STATUSES | {StageStatus.PAYMENT_PENDING.value} and not (
        stage.stage_number == 0 and stage.status == StageStatus.ACTIVE.value
    ):
        raise InvalidState(f"Stage is {stage.status}; payment is not due yet")
    if project.status != ProjectStatus.ACTIVE.value:
        raise InvalidState(f"Project is {project.status}; payments cannot be confirmed")

    now = utcnow()
    superseded = []
    outstanding = await get_outstanding_claim(session, stage.id, ClaimKind.STAGE)
    if outstanding is not None:
        outstanding.status = ClaimStatus.REJECTED.value
        outstanding.rejected_at = now
        outstanding.rejection_reason = "Superseded by confirmed card payment"
        superseded.append(outstanding)

    claim = PaymentClaim(
        stage_id=stage.id,
        kind=ClaimKind.STAGE.value,
        amount=amount,
        channel=PaymentChannel.STRIPE.value,
        reference_code=reference_code,
        status=ClaimStatus.VERIFIED.value,
        stage_status_before=stage.status,
        marked_paid_at=now,
        verified_at=now,
    )
    _complete_stage(stage)
    if stage.approved_at is None:
        stage.approved_at = now
    # Versioned stage UPDATE first, so a concurrent delivery of the same event goes stale
    await session.flush()
    await _insert_external_claim(session, claim)

    await record_event(
        session, project.id, "payment.verified", actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "reference_code": reference_code, "amount": amount},
    )
    result = await unlock.on_stage_completed(session, stage, project, actor)
    await session.flush()

    log.info("payment.external_confirmed", stage_id=str(stage.id), reference_code=reference_code)
    return ClaimOutcome(
        claim=claim,
        stage=stage,
        project=project,
        unlocked_stage=result.unlocked_stage,
        project_completed=result.project_completed,
        superseded=superseded,
    )


async def _confirm_external_extension(
    session: AsyncSession,
    stage: Stage,
    project: Project,
    reference_code: str,
    amount: int,
    actor: ActorContext,
) -> ClaimOutcome:
    if stage.status == StageStatus.COMPLETED.value:
        raise InvalidState("Stage is already completed; extensions can no longer be added")

    now = utcnow()
    claim = PaymentClaim(
        stage_id=stage.id,
        kind=ClaimKind.EXTENSION.value,
        amount=amount,
        channel=PaymentChannel.STRIPE.value,
        reference_code=reference_code,
        status=ClaimStatus.VERIFIED.value,
        marked_paid_at=now,
        verified_at=now,
    )
    credits.grant_extension(stage)
    await session.flush()
    await _insert_external_claim(session, claim)

    await record_event(
        session, project.id, "extension.verified", actor,
        stage_id=stage.id,
        payload={"claim_id": str(claim.id), "revisions_included": stage.revisions_included},
    )
    await session.flush()
    log.info("payment.external_extension_confirmed", stage_id=str(stage.id), reference_code=reference_code)
    return ClaimOutcome(claim=claim, stage=stage, project=project)
