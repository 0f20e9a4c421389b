"""Tests for the agreement lifecycle: negotiation, signatures, funding, closing."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from milestone_escrow.domain.exceptions import (
    AgreementNotFoundError,
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    ValidationError,
)
from milestone_escrow.infrastructure.database.orm_models import Transaction
from milestone_escrow.infrastructure.database.repositories import MilestoneRepository
from milestone_escrow.services import MilestoneService

from conftest import CLIENT_WALLET, DEPOSIT_TX_HASH, DEVELOPER_WALLET


class TestCreateAgreement:
    @pytest.mark.asyncio
    async def test_creates_draft_with_milestones(
        self, session, create_agreement, client_user, developer_user
    ) -> None:
        agreement = await create_agreement(Decimal("300"), Decimal("700"))

        assert agreement.status == "draft"
        assert agreement.agreement_code.startswith("AGR-")
        assert agreement.client_id == client_user.id
        assert agreement.developer_id == developer_user.id
        assert agreement.total_value == Decimal("1000")
        assert agreement.remaining_amount == Decimal("1000")
        assert agreement.released_amount == Decimal("0")
        assert agreement.platform_fee_amount == Decimal("25")
        assert agreement.escrow_status == "pending"
        assert agreement.milestones_total == 2

        milestones = await MilestoneRepository(session).get_by_agreement(agreement.id)
        assert [m.milestone_number for m in milestones] == [1, 2]
        assert all(m.status == "pending" for m in milestones)

        await session.refresh(client_user)
        assert client_user.agreements_created == 1

    @pytest.mark.asyncio
    async def test_milestones_must_add_up(self, agreement_service, client_actor) -> None:
        with pytest.raises(ValidationError, match="must add up"):
            await agreement_service.create_agreement(
                client_actor,
                developer_wallet=DEVELOPER_WALLET,
                title="Mismatch",
                description="Milestones do not cover the total",
                total_value=Decimal("1000"),
                milestones=[{"title": "Only part", "value": Decimal("400")}],
            )

    @pytest.mark.asyncio
    async def test_client_cannot_hire_themselves(self, agreement_service, client_actor) -> None:
        with pytest.raises(ValidationError, match="different parties"):
            await agreement_service.create_agreement(
                client_actor,
                developer_wallet=CLIENT_WALLET.upper().replace("0X", "0x"),
                title="Self",
                description="Same wallet on both sides",
                total_value=Decimal("10"),
            )


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_developer_prices_the_work(
        self, session, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await create_agreement()
        ref = str(agreement.id)
        await agreement_service.submit_to_developer(client_actor, ref)

        await agreement_service.developer_accept(
            developer_actor,
            ref,
            milestones=[
                {"title": "Design", "value": Decimal("500")},
                {"title": "Build", "value": Decimal("1000")},
            ],
            total_value=Decimal("1500"),
        )

        assert agreement.status == "pending_client"
        assert agreement.total_value == Decimal("1500")
        assert agreement.remaining_amount == Decimal("1500")
        milestones = await MilestoneRepository(session).get_by_agreement(agreement.id)
        assert [m.title for m in milestones] == ["Design", "Build"]

    @pytest.mark.asyncio
    async def test_client_cannot_accept_for_developer(
        self, agreement_service, create_agreement, client_actor
    ) -> None:
        agreement = await create_agreement()
        await agreement_service.submit_to_developer(client_actor, str(agreement.id))

        with pytest.raises(AuthorizationError):
            await agreement_service.developer_accept(client_actor, str(agreement.id))

    @pytest.mark.asyncio
    async def test_developer_declines(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await create_agreement()
        ref = agreement.agreement_code
        await agreement_service.submit_to_developer(client_actor, ref)

        await agreement_service.respond(developer_actor, ref, accept=False, reason="Too busy")

        assert agreement.status == "cancelled"
        assert agreement.cancelled_by == "developer"
        assert agreement.cancellation_reason == "Too busy"

    @pytest.mark.asyncio
    async def test_draft_can_be_edited_only_as_draft(
        self, agreement_service, create_agreement, client_actor
    ) -> None:
        agreement = await create_agreement()
        ref = str(agreement.id)
        await agreement_service.update_agreement(client_actor, ref, title="Renamed")
        assert agreement.title == "Renamed"

        await agreement_service.submit_to_developer(client_actor, ref)
        with pytest.raises(ValidationError, match="draft"):
            await agreement_service.update_agreement(client_actor, ref, title="Too late")

    @pytest.mark.asyncio
    async def test_outsider_cannot_view(
        self, agreement_service, create_agreement, outsider_actor
    ) -> None:
        agreement = await create_agreement()
        with pytest.raises(AuthorizationError):
            await agreement_service.get_agreement(outsider_actor, str(agreement.id))

    @pytest.mark.asyncio
    async def test_unknown_agreement(self, agreement_service, client_actor) -> None:
        with pytest.raises(AgreementNotFoundError):
            await agreement_service.get_agreement(client_actor, "AGR-0000000000000-XXXXXX")


class TestSignatures:
    async def _pending_client(self, agreement_service, create_agreement, client_actor, developer_actor):  # noqa: ANN001, ANN202
        agreement = await create_agreement()
        ref = str(agreement.id)
        await agreement_service.submit_to_developer(client_actor, ref)
        await agreement_service.developer_accept(developer_actor, ref)
        return agreement

    @pytest.mark.asyncio
    async def test_both_signatures_open_escrow_deposit(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await self._pending_client(
            agreement_service, create_agreement, client_actor, developer_actor
        )
        ref = str(agreement.id)

        await agreement_service.sign(client_actor, ref, CLIENT_WALLET, message="I agree")
        assert agreement.status == "pending_signatures"
        assert agreement.client_signed

        await agreement_service.sign(developer_actor, ref, DEVELOPER_WALLET)
        assert agreement.status == "escrow_deposit"
        assert agreement.developer_signed

        await agreement_service.client_approve(client_actor, ref, tx_hash=DEPOSIT_TX_HASH)
        assert agreement.status == "active"

    @pytest.mark.asyncio
    async def test_second_signature_by_same_party(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await self._pending_client(
            agreement_service, create_agreement, client_actor, developer_actor
        )
        await agreement_service.sign(client_actor, str(agreement.id), CLIENT_WALLET)

        with pytest.raises(ValidationError) as exc_info:
            await agreement_service.sign(client_actor, str(agreement.id), CLIENT_WALLET)
        assert exc_info.value.code == "ALREADY_SIGNED"

    @pytest.mark.asyncio
    async def test_signing_wallet_must_match(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await self._pending_client(
            agreement_service, create_agreement, client_actor, developer_actor
        )
        with pytest.raises(ValidationError, match="Signing wallet"):
            await agreement_service.sign(client_actor, str(agreement.id), DEVELOPER_WALLET)


class TestFunding:
    @pytest.mark.asyncio
    async def test_client_approve_locks_escrow(
        self, session, funded_agreement
    ) -> None:
        agreement = await funded_agreement(Decimal("1000"))

        assert agreement.status == "active"
        assert agreement.escrow_status == "locked"
        assert agreement.escrow_held_amount == Decimal("1000")
        assert agreement.blockchain_tx_hash == DEPOSIT_TX_HASH
        assert agreement.blockchain_network == "sepolia"
        assert agreement.start_date is not None

        deposits = (
            await session.execute(
                select(Transaction).where(Transaction.agreement_id == agreement.id)
            )
        ).scalars().all()
        assert len(deposits) == 1
        assert deposits[0].type == "escrow_deposit"
        assert deposits[0].status == "completed"
        assert deposits[0].tx_hash == DEPOSIT_TX_HASH

    @pytest.mark.asyncio
    async def test_developer_cannot_fund(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await create_agreement()
        ref = str(agreement.id)
        await agreement_service.submit_to_developer(client_actor, ref)
        await agreement_service.developer_accept(developer_actor, ref)

        with pytest.raises(AuthorizationError) as exc_info:
            await agreement_service.client_approve(developer_actor, ref, tx_hash=DEPOSIT_TX_HASH)
        assert exc_info.value.status_code == 403
        assert agreement.status == "pending_client"

    @pytest.mark.asyncio
    async def test_invalid_tx_hash(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await create_agreement()
        ref = str(agreement.id)
        await agreement_service.submit_to_developer(client_actor, ref)
        await agreement_service.developer_accept(developer_actor, ref)

        with pytest.raises(ValidationError, match="transaction hash"):
            await agreement_service.client_approve(client_actor, ref, tx_hash="0x1234")

    @pytest.mark.asyncio
    async def test_cannot_fund_twice(self, agreement_service, funded_agreement, client_actor) -> None:
        agreement = await funded_agreement()
        with pytest.raises(InvalidStateTransitionError):
            await agreement_service.client_approve(
                client_actor, str(agreement.id), tx_hash=DEPOSIT_TX_HASH
            )

    @pytest.mark.asyncio
    async def test_blockchain_hash_is_write_once(
        self, agreement_service, create_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await create_agreement()
        ref = str(agreement.id)
        await agreement_service.submit_to_developer(client_actor, ref)
        await agreement_service.developer_accept(developer_actor, ref)
        agreement.blockchain_tx_hash = DEPOSIT_TX_HASH

        with pytest.raises(ConflictError):
            await agreement_service.client_approve(client_actor, ref, tx_hash=DEPOSIT_TX_HASH)


class TestClosing:
    @pytest.mark.asyncio
    async def test_complete_requires_approved_milestones(
        self, agreement_service, funded_agreement, client_actor
    ) -> None:
        agreement = await funded_agreement(Decimal("400"), Decimal("600"))

        with pytest.raises(ValidationError) as exc_info:
            await agreement_service.complete(client_actor, str(agreement.id))
        assert exc_info.value.code == "MILESTONES_INCOMPLETE"
        assert agreement.status == "active"

    @pytest.mark.asyncio
    async def test_cancel_requires_reason(
        self, agreement_service, create_agreement, client_actor
    ) -> None:
        agreement = await create_agreement()
        with pytest.raises(ValidationError, match="reason"):
            await agreement_service.cancel(client_actor, str(agreement.id), reason="  ")

    @pytest.mark.asyncio
    async def test_cancel_records_party(
        self, agreement_service, funded_agreement, developer_actor
    ) -> None:
        agreement = await funded_agreement()
        await agreement_service.cancel(developer_actor, str(agreement.id), reason="Client vanished")

        assert agreement.status == "cancelled"
        assert agreement.cancelled_by == "developer"

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(
        self, session, agreement_service, funded_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement(Decimal("1000"))
        milestones = MilestoneService(session)
        (milestone,) = await milestones.list_for_agreement(client_actor, str(agreement.id))
        await milestones.start(developer_actor, str(milestone.id))
        await milestones.submit(developer_actor, str(milestone.id), notes="Done")
        await milestones.approve(client_actor, str(milestone.id), rating=5)
        await agreement_service.complete(client_actor, str(agreement.id))

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await agreement_service.cancel(client_actor, str(agreement.id), reason="Changed mind")
        assert exc_info.value.status_code == 400
        assert agreement.status == "completed"


class TestDisputes:
    @pytest.mark.asyncio
    async def test_raise_and_resolve(
        self, agreement_service, funded_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement()
        ref = str(agreement.id)

        await agreement_service.raise_dispute(developer_actor, ref, reason="Scope creep")
        assert agreement.status == "disputed"
        assert agreement.dispute_reason == "Scope creep"

        await agreement_service.resolve_dispute(client_actor, ref, resolution="Agreed on scope")
        assert agreement.status == "in_progress"

    @pytest.mark.asyncio
    async def test_dispute_needs_reason(
        self, agreement_service, funded_agreement, client_actor
    ) -> None:
        agreement = await funded_agreement()
        with pytest.raises(ValidationError, match="reason"):
            await agreement_service.raise_dispute(client_actor, str(agreement.id), reason="")


class TestReads:
    @pytest.mark.asyncio
    async def test_events_trace_the_lifecycle(
        self, agreement_service, funded_agreement, client_actor
    ) -> None:
        agreement = await funded_agreement()
        events = await agreement_service.get_events(client_actor, str(agreement.id))
        types = {e.event_type for e in events}

        assert {
            "AGREEMENT_CREATED",
            "MILESTONE_CREATED",
            "SUBMITTED_TO_DEVELOPER",
            "DEVELOPER_ACCEPTED",
            "ESCROW_FUNDED",
        } <= types

    @pytest.mark.asyncio
    async def test_statistics_by_role(
        self, agreement_service, funded_agreement, create_agreement, client_actor, developer_actor
    ) -> None:
        await funded_agreement()
        await create_agreement(title="Second")

        stats = await agreement_service.get_statistics(client_actor)
        assert stats["total"] == 2
        assert stats["active"] == 1
        assert stats["as_client"] == 2
        assert stats["as_developer"] == 0
        assert stats["by_status"] == {"active": 1, "draft": 1}

        developer_stats = await agreement_service.get_statistics(developer_actor)
        assert developer_stats["as_developer"] == 2

    @pytest.mark.asyncio
    async def test_list_filters_by_status(
        self, agreement_service, funded_agreement, create_agreement, client_actor
    ) -> None:
        await funded_agreement()
        await create_agreement(title="Second")

        items, total = await agreement_service.list_agreements(client_actor, status="draft")
        assert total == 1
        assert items[0].title == "Second"


class TestCompletion:
    @pytest.mark.asyncio
    async def test_full_lifecycle_updates_user_stats(
        self,
        session,
        agreement_service,
        funded_agreement,
        client_actor,
        developer_actor,
        client_user,
        developer_user,
    ) -> None:
        agreement = await funded_agreement(Decimal("300"), Decimal("700"))
        milestones = MilestoneService(session)
        for milestone in await milestones.list_for_agreement(client_actor, str(agreement.id)):
            await milestones.start(developer_actor, str(milestone.id))
            await milestones.submit(developer_actor, str(milestone.id), notes="Done")
            await milestones.approve(client_actor, str(milestone.id), rating=5)

        await agreement_service.complete(client_actor, str(agreement.id))

        assert agreement.status == "completed"
        assert agreement.actual_end_date is not None
        assert agreement.released_amount == Decimal("1000")

        await session.refresh(client_user)
        await session.refresh(developer_user)
        assert client_user.agreements_completed == 1
        assert client_user.total_spent == Decimal("1000")
        assert developer_user.agreements_completed == 1
        assert developer_user.total_earned == Decimal("1000")

    @pytest.mark.asyncio
    async def test_complete_pays_out_unallocated_remainder(
        self, session, agreement_service, funded_agreement, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement(Decimal("1000"))
        ref = str(agreement.id)
        milestones = MilestoneService(session)
        (milestone,) = await milestones.list_for_agreement(client_actor, ref)
        await milestones.start(developer_actor, str(milestone.id))
        await milestones.submit(developer_actor, str(milestone.id))
        await milestones.approve(client_actor, str(milestone.id), rating=5)
        # Bonus agreed after the milestone was paid
        agreement.total_value = Decimal("1200")
        agreement.remaining_amount = Decimal("200")
        agreement.escrow_held_amount = Decimal("200")

        await agreement_service.complete(client_actor, ref)

        final = (
            await session.execute(
                select(Transaction).where(
                    Transaction.agreement_id == agreement.id,
                    Transaction.type == "final_payment",
                )
            )
        ).scalar_one()
        assert final.amount == Decimal("200")
        assert agreement.remaining_amount == Decimal("0")
        assert agreement.released_amount == Decimal("1200")
