"""
Tests for the payment claim protocol.

Tests cover:
- Claim submission guards (payable status, amount, duplicates)
- Verification: stage completion, AlreadyVerified, NotFound
- Rejection restores the pre-claim stage state
- Extension purchases grant one included revision
- Trusted external confirmation and its idempotency
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from app.core.auth import ActorContext
from app.core.errors import (
    AlreadyRejected,
    AlreadyVerified,
    DuplicateClaim,
    InvalidState,
    NoCreditsAvailable,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from app.services.payments import generate_reference_code
from app.models.stage import Stage
from milestage_shared.schemas.common import (
    ClaimKind,
    ClaimStatus,
    PaymentChannel,
    PaymentStatus,
    StageStatus,
)
from milestage_shared.schemas.stages import StageCreate

from conftest import deliverable

BANK = PaymentChannel.BANK_TRANSFER


async def delivered_stage(service, make_project, freelancer, **kwargs):
    project = await make_project(**kwargs)
    stage = project.stages[0]
    await service.deliver_stage(stage.id, [deliverable()], freelancer)
    return project, stage, ActorContext.client(project.id)


class TestReferenceCode:
    def test_format(self):
        stage = Stage(id=uuid.UUID("12345678-9abc-def0-1234-56789abcdef0"), project_id=uuid.uuid4(),
                      stage_number=2, name="Build")
        code = generate_reference_code(stage, ClaimKind.STAGE)
        prefix, stage_part, nonce = code.split("-")
        assert prefix == "STAGE2"
        assert stage_part == "12345678"
        assert len(nonce) == 6

    def test_extension_prefix(self):
        stage = Stage(project_id=uuid.uuid4(), stage_number=1, name="Build")
        assert generate_reference_code(stage, ClaimKind.EXTENSION).startswith("EXT-")


class TestSubmitClaim:
    @pytest.mark.asyncio
    async def test_submit_marks_pending(self, service, make_project, freelancer, sink):
        project, stage, client = await delivered_stage(service, make_project, freelancer)

        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)

        assert claim.status == ClaimStatus.MARKED_PAID
        assert claim.kind == ClaimKind.STAGE
        read = (await service.get_project(project.id, freelancer)).stages[0]
        assert read.status == StageStatus.PAYMENT_PENDING
        assert read.payment_status == PaymentStatus.PENDING
        assert sink.kinds()[-1] == "payment_claimed"
        assert sink.sent[-1].recipient == "freelancer"

    @pytest.mark.asyncio
    async def test_duplicate_claim_rejected(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        await service.submit_payment_claim(stage.id, 1000, BANK, client)
        with pytest.raises(DuplicateClaim):
            await service.submit_payment_claim(stage.id, 1000, BANK, client)

    @pytest.mark.asyncio
    async def test_not_payable_before_delivery(self, service, make_project):
        project = await make_project()
        client = ActorContext.client(project.id)
        with pytest.raises(InvalidState):
            await service.submit_payment_claim(project.stages[0].id, 1000, BANK, client)

    @pytest.mark.asyncio
    async def test_amount_must_match(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        with pytest.raises(ValidationFailed):
            await service.submit_payment_claim(stage.id, 999, BANK, client)

    @pytest.mark.asyncio
    async def test_freelancer_cannot_claim(self, service, make_project, freelancer):
        _, stage, _ = await delivered_stage(service, make_project, freelancer)
        with pytest.raises(Unauthorized):
            await service.submit_payment_claim(stage.id, 1000, BANK, freelancer)


class TestVerifyClaim:
    @pytest.mark.asyncio
    async def test_verify_completes_and_unlocks(self, service, make_project, freelancer, sink):
        project, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)

        result = await service.verify_payment_claim(claim.id, freelancer)

        assert result.stage_id == stage.id
        assert result.unlocked_stage_id == project.stages[1].id
        assert result.project_completed is False

        read = await service.get_project(project.id, freelancer)
        assert read.stages[0].status == StageStatus.COMPLETED
        assert read.stages[0].payment_status == PaymentStatus.RECEIVED
        assert read.stages[0].payment_received_at is not None
        assert read.stages[1].status == StageStatus.ACTIVE
        assert sink.kinds()[-1] == "payment_received"

    @pytest.mark.asyncio
    async def test_verify_twice(self, service, make_project, freelancer):
        project, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        await service.verify_payment_claim(claim.id, freelancer)

        with pytest.raises(AlreadyVerified):
            await service.verify_payment_claim(claim.id, freelancer)

        events = await service.list_project_events(project.id, freelancer, "stage.unlocked")
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_unlock_failure_rolls_back_verification(self, service, make_project, freelancer, sink):
        """Claim, stage and successor stay untouched when the unlock step fails."""
        project, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)

        failing_unlock = AsyncMock(side_effect=RuntimeError("unlock failed"))
        with patch("app.services.unlock.on_stage_completed", new=failing_unlock):
            with pytest.raises(RuntimeError):
                await service.verify_payment_claim(claim.id, freelancer)

        read = await service.get_project(project.id, freelancer)
        assert read.stages[0].status == StageStatus.PAYMENT_PENDING
        assert read.stages[0].payment_status == PaymentStatus.PENDING
        assert read.stages[0].claims[0].status == ClaimStatus.MARKED_PAID
        assert read.stages[1].status == StageStatus.LOCKED
        assert "payment_received" not in sink.kinds()
        assert await service.list_project_events(project.id, freelancer, "payment.verified") == []

        # The same claim verifies cleanly once the fault is gone
        result = await service.verify_payment_claim(claim.id, freelancer)
        assert result.unlocked_stage_id == project.stages[1].id

    @pytest.mark.asyncio
    async def test_verify_unknown_claim(self, service, freelancer):
        with pytest.raises(NotFound):
            await service.verify_payment_claim(uuid.uuid4(), freelancer)

    @pytest.mark.asyncio
    async def test_client_cannot_verify(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        with pytest.raises(Unauthorized):
            await service.verify_payment_claim(claim.id, client)


class TestRejectClaim:
    @pytest.mark.asyncio
    async def test_reject_restores_and_allows_resubmit(self, service, make_project, freelancer, sink):
        project, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)

        rejected = await service.reject_payment_claim(claim.id, "Nothing arrived yet", freelancer)

        assert rejected.status == ClaimStatus.REJECTED
        assert rejected.rejection_reason == "Nothing arrived yet"
        read = (await service.get_project(project.id, freelancer)).stages[0]
        assert read.status == StageStatus.DELIVERED
        assert read.payment_status == PaymentStatus.UNPAID
        assert read.approved_at is None
        assert sink.kinds()[-1] == "payment_rejected"

        again = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        assert again.status == ClaimStatus.MARKED_PAID
        assert again.reference_code != claim.reference_code

    @pytest.mark.asyncio
    async def test_reject_after_approval_keeps_approval(self, service, make_project, freelancer):
        project, stage, client = await delivered_stage(service, make_project, freelancer)
        await service.approve_stage(stage.id, client)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)

        await service.reject_payment_claim(claim.id, "Wrong reference", freelancer)

        read = (await service.get_project(project.id, freelancer)).stages[0]
        assert read.status == StageStatus.APPROVED
        assert read.approved_at is not None

    @pytest.mark.asyncio
    async def test_reject_twice(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        await service.reject_payment_claim(claim.id, "Not received", freelancer)
        with pytest.raises(AlreadyRejected):
            await service.reject_payment_claim(claim.id, "Not received", freelancer)

    @pytest.mark.asyncio
    async def test_reject_verified(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        await service.verify_payment_claim(claim.id, freelancer)
        with pytest.raises(AlreadyVerified):
            await service.reject_payment_claim(claim.id, "Changed my mind", freelancer)


class TestExtensions:
    @pytest.mark.asyncio
    async def test_extension_restores_revisions(self, service, make_project, freelancer, sink):
        """Two credits used up, an extension is bought, a third revision succeeds."""
        project, stage, client = await delivered_stage(service, make_project, freelancer)

        await service.request_revision(stage.id, "Round one of feedback", client)
        await service.deliver_stage(stage.id, [deliverable(2)], freelancer)
        await service.request_revision(stage.id, "Round two of feedback", client)
        await service.deliver_stage(stage.id, [deliverable(3)], freelancer)
        with pytest.raises(NoCreditsAvailable):
            await service.request_revision(stage.id, "Round three of feedback", client)

        claim = await service.submit_extension_claim(stage.id, None, BANK, client)
        assert claim.kind == ClaimKind.EXTENSION
        assert claim.amount == 150
        assert claim.reference_code.startswith("EXT-")

        verified = await service.verify_extension_claim(claim.id, freelancer)
        assert verified.revisions_included == 3
        assert verified.status == StageStatus.DELIVERED
        assert sink.kinds()[-1] == "extension_verified"

        revised = await service.request_revision(stage.id, "Round three of feedback", client)
        assert revised.revisions_used == 3
        assert revised.revisions[-1].sequence == 3

    @pytest.mark.asyncio
    async def test_extension_does_not_touch_stage_status(self, service, make_project, freelancer):
        project = await make_project()
        client = ActorContext.client(project.id)
        stage_id = project.stages[0].id
        await service.submit_extension_claim(stage_id, 150, BANK, client)

        read = (await service.get_project(project.id, freelancer)).stages[0]
        assert read.status == StageStatus.ACTIVE
        assert read.payment_status == PaymentStatus.UNPAID

    @pytest.mark.asyncio
    async def test_extension_amount_must_match_price(self, service, make_project):
        project = await make_project()
        client = ActorContext.client(project.id)
        with pytest.raises(ValidationFailed):
            await service.submit_extension_claim(project.stages[0].id, 1, BANK, client)

    @pytest.mark.asyncio
    async def test_extension_amount_free_when_unpriced(self, service, make_project):
        project = await make_project(stages=[StageCreate(name="Only", amount=500)])
        client = ActorContext.client(project.id)
        claim = await service.submit_extension_claim(project.stages[0].id, 75, BANK, client)
        assert claim.amount == 75

    @pytest.mark.asyncio
    async def test_duplicate_extension_claim(self, service, make_project, freelancer):
        project = await make_project()
        client = ActorContext.client(project.id)
        stage_id = project.stages[0].id
        await service.submit_extension_claim(stage_id, None, BANK, client)
        with pytest.raises(DuplicateClaim):
            await service.submit_extension_claim(stage_id, None, BANK, client)

    @pytest.mark.asyncio
    async def test_extension_and_stage_claims_are_separate_ledgers(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        await service.submit_extension_claim(stage.id, None, BANK, client)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        assert claim.kind == ClaimKind.STAGE

    @pytest.mark.asyncio
    async def test_extension_without_price(self, service, make_project):
        project = await make_project(stages=[StageCreate(name="Only", amount=500)])
        client = ActorContext.client(project.id)
        with pytest.raises(ValidationFailed):
            await service.submit_extension_claim(project.stages[0].id, None, BANK, client)

    @pytest.mark.asyncio
    async def test_reject_extension(self, service, make_project, freelancer, sink):
        project = await make_project()
        client = ActorContext.client(project.id)
        stage_id = project.stages[0].id
        claim = await service.submit_extension_claim(stage_id, None, BANK, client)

        rejected = await service.reject_extension_claim(claim.id, "No transfer found", freelancer)

        assert rejected.status == ClaimStatus.REJECTED
        read = (await service.get_project(project.id, freelancer)).stages[0]
        assert read.revisions_included == 2
        assert read.status == StageStatus.ACTIVE
        assert sink.kinds()[-1] == "extension_rejected"

    @pytest.mark.asyncio
    async def test_stage_claim_id_is_not_an_extension(self, service, make_project, freelancer):
        _, stage, client = await delivered_stage(service, make_project, freelancer)
        claim = await service.submit_payment_claim(stage.id, 1000, BANK, client)
        with pytest.raises(NotFound):
            await service.verify_extension_claim(claim.id, freelancer)


class TestExternalConfirmation:
    @pytest.mark.asyncio
    async def test_confirm_completes_stage(self, service, make_project, freelancer):
        project, stage, _ = await delivered_stage(service, make_project, freelancer)
        system = ActorContext.system()

        result = await service.confirm_external_payment(stage.id, "pi_123", 1000, system)

        assert result.unlocked_stage_id == project.stages[1].id
        read = (await service.get_project(project.id, freelancer)).stages[0]
        assert read.status == StageStatus.COMPLETED
        assert read.claims[0].reference_code == "STRIPE-pi_123"
        assert read.claims[0].channel == PaymentChannel.STRIPE

    @pytest.mark.asyncio
    async def test_redelivery_is_harmless(self, service, make_project, freelancer, sink):
        project, stage, _ = await delivered_stage(service, make_project, freelancer)
        system = ActorContext.system()

        first = await service.confirm_external_payment(stage.id, "pi_123", 1000, system)
        sent = len(sink.sent)
        second = await service.confirm_external_payment(stage.id, "pi_123", 1000, system)

        assert second.claim_id == first.claim_id
        assert len(sink.sent) == sent
        events = await service.list_project_events(project.id, freelancer, "stage.unlocked")
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_supersedes_manual_claim(self, service, make_project, freelancer):
        project, stage, client = await delivered_stage(service, make_project, freelancer)
        manual = await service.submit_payment_claim(stage.id, 1000, BANK, client)

        await service.confirm_external_payment(stage.id, "pi_456", 1000, ActorContext.system())

        claims = {c.id: c for c in (await service.get_project(project.id, freelancer)).stages[0].claims}
        assert claims[manual.id].status == ClaimStatus.REJECTED
        assert "Superseded" in claims[manual.id].rejection_reason

    @pytest.mark.asyncio
    async def test_second_payment_for_completed_stage(self, service, make_project, freelancer):
        _, stage, _ = await delivered_stage(service, make_project, freelancer)
        system = ActorContext.system()
        await service.confirm_external_payment(stage.id, "pi_1", 1000, system)
        with pytest.raises(AlreadyVerified):
            await service.confirm_external_payment(stage.id, "pi_2", 1000, system)

    @pytest.mark.asyncio
    async def test_external_extension(self, service, make_project, freelancer):
        project = await make_project()
        stage_id = project.stages[0].id
        system = ActorContext.system()

        await service.confirm_external_payment(stage_id, "pi_ext", 150, system, kind=ClaimKind.EXTENSION)
        await service.confirm_external_payment(stage_id, "pi_ext", 150, system, kind=ClaimKind.EXTENSION)

        balance = await service.get_credit_balance(stage_id, freelancer)
        assert balance.revisions_included == 3

    @pytest.mark.asyncio
    async def test_only_system_may_confirm(self, service, make_project, freelancer):
        _, stage, _ = await delivered_stage(service, make_project, freelancer)
        with pytest.raises(Unauthorized):
            await service.confirm_external_payment(stage.id, "pi_1", 1000, freelancer)
