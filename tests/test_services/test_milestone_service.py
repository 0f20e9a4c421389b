"""Tests for the milestone workflow and the payments it releases."""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import update

from milestone_escrow.domain.exceptions import (
    AuthorizationError,
    ConcurrentModificationError,
    InsufficientEscrowError,
    InvalidStateTransitionError,
    ValidationError,
)
from milestone_escrow.domain.protocols import UploadedFile
from milestone_escrow.infrastructure.database.orm_models import Agreement, Milestone
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    TransactionRepository,
)
from milestone_escrow.services import EscrowLedger, MilestoneService

from conftest import StubUploader


@pytest.fixture
def uploader() -> StubUploader:
    return StubUploader()


@pytest.fixture
def milestone_service(session, uploader) -> MilestoneService:  # noqa: ANN001
    return MilestoneService(session, uploader=uploader, max_upload_files=2)


@pytest_asyncio.fixture
async def submitted(funded_agreement, milestone_service, client_actor, developer_actor):  # noqa: ANN001, ANN201
    """A funded single-milestone agreement whose milestone awaits review."""
    agreement = await funded_agreement(Decimal("1000"))
    (milestone,) = await milestone_service.list_for_agreement(client_actor, str(agreement.id))
    await milestone_service.start(developer_actor, str(milestone.id))
    await milestone_service.submit(developer_actor, str(milestone.id), notes="Ready")
    return agreement, milestone


class TestDeveloperWork:
    @pytest.mark.asyncio
    async def test_first_start_moves_agreement_in_progress(
        self, funded_agreement, milestone_service, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement(Decimal("400"), Decimal("600"))
        first, second = await milestone_service.list_for_agreement(client_actor, str(agreement.id))

        await milestone_service.start(developer_actor, str(first.id))
        assert first.status == "in_progress"
        assert first.start_date is not None
        assert agreement.status == "in_progress"

        await milestone_service.start(developer_actor, str(second.id))
        assert agreement.status == "in_progress"

    @pytest.mark.asyncio
    async def test_work_needs_a_funded_agreement(
        self, create_agreement, milestone_service, client_actor, developer_actor
    ) -> None:
        agreement = await create_agreement()
        (milestone,) = await milestone_service.list_for_agreement(client_actor, str(agreement.id))

        with pytest.raises(ValidationError) as exc_info:
            await milestone_service.start(developer_actor, str(milestone.id))
        assert exc_info.value.code == "AGREEMENT_NOT_ACTIVE"

    @pytest.mark.asyncio
    async def test_client_cannot_start(
        self, funded_agreement, milestone_service, client_actor
    ) -> None:
        agreement = await funded_agreement()
        (milestone,) = await milestone_service.list_for_agreement(client_actor, str(agreement.id))

        with pytest.raises(AuthorizationError):
            await milestone_service.start(client_actor, str(milestone.id))

    @pytest.mark.asyncio
    async def test_submit_stores_evidence(
        self, funded_agreement, milestone_service, uploader, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement()
        (milestone,) = await milestone_service.list_for_agreement(client_actor, str(agreement.id))
        await milestone_service.start(developer_actor, str(milestone.id))

        await milestone_service.submit(
            developer_actor,
            str(milestone.id),
            notes="See attached",
            files=[UploadedFile(filename="report.pdf", content=b"%PDF-1.7")],
        )

        assert milestone.status == "submitted"
        assert milestone.submission["notes"] == "See attached"
        assert milestone.submission["files"][0]["ipfs_hash"] == "bafy0001"
        assert len(uploader.stored) == 1

    @pytest.mark.asyncio
    async def test_too_many_files(
        self, funded_agreement, milestone_service, uploader, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement()
        (milestone,) = await milestone_service.list_for_agreement(client_actor, str(agreement.id))
        await milestone_service.start(developer_actor, str(milestone.id))
        files = [UploadedFile(filename=f"f{i}.txt", content=b"x") for i in range(3)]

        with pytest.raises(ValidationError, match="At most 2"):
            await milestone_service.submit(developer_actor, str(milestone.id), files=files)
        assert uploader.stored == []
        assert milestone.status == "in_progress"


class TestApproval:
    @pytest.mark.asyncio
    async def test_approve_releases_payment(
        self, session, submitted, milestone_service, client_actor
    ) -> None:
        agreement, milestone = submitted

        await milestone_service.approve(client_actor, str(milestone.id), rating=5, feedback="Great")

        assert milestone.status == "approved"
        assert milestone.is_paid
        assert milestone.paid_at is not None
        assert milestone.review_rating == 5
        assert agreement.released_amount == Decimal("1000")
        assert agreement.remaining_amount == Decimal("0")
        assert agreement.escrow_status == "completed"
        assert agreement.status == "awaiting_final_approval"
        assert agreement.milestones_approved == 1

        (payment,) = await TransactionRepository(session).get_by_milestone(milestone.id)
        assert payment.type == "milestone_payment"
        assert payment.status == "pending"
        assert payment.amount == Decimal("1000")
        assert payment.platform_fee == Decimal("25")
        assert milestone.payment_transaction_id == payment.id

    @pytest.mark.asyncio
    async def test_second_approval_pays_nothing(
        self, session, submitted, milestone_service, client_actor
    ) -> None:
        agreement, milestone = submitted
        await milestone_service.approve(client_actor, str(milestone.id), rating=4)

        with pytest.raises(InvalidStateTransitionError):
            await milestone_service.approve(client_actor, str(milestone.id), rating=4)

        assert agreement.released_amount == Decimal("1000")
        payments = await TransactionRepository(session).get_by_milestone(milestone.id)
        assert len(payments) == 1

    @pytest.mark.asyncio
    async def test_losing_a_concurrent_approval_pays_nothing(
        self, session, submitted, milestone_service, client_actor
    ) -> None:
        agreement, milestone = submitted
        # Another request approves the row; this session still holds the old copy
        await session.execute(
            update(Milestone)
            .where(Milestone.id == milestone.id)
            .values(status="approved", is_paid=True)
            .execution_options(synchronize_session=False)
        )
        assert milestone.status == "submitted"

        with pytest.raises(ConcurrentModificationError):
            await milestone_service.approve(client_actor, str(milestone.id), rating=5)

        assert agreement.released_amount == Decimal("0")
        assert agreement.remaining_amount == Decimal("1000")
        assert await TransactionRepository(session).get_by_milestone(milestone.id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6])
    async def test_rating_out_of_range(
        self, submitted, milestone_service, client_actor, rating: int
    ) -> None:
        agreement, milestone = submitted

        with pytest.raises(ValidationError, match="Rating"):
            await milestone_service.approve(client_actor, str(milestone.id), rating=rating)
        assert milestone.status == "submitted"
        assert agreement.released_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_developer_cannot_approve(
        self, submitted, milestone_service, developer_actor
    ) -> None:
        _, milestone = submitted
        with pytest.raises(AuthorizationError):
            await milestone_service.approve(developer_actor, str(milestone.id), rating=5)

    @pytest.mark.asyncio
    async def test_approve_from_review(
        self, submitted, milestone_service, client_actor
    ) -> None:
        _, milestone = submitted
        await milestone_service.begin_review(client_actor, str(milestone.id))
        assert milestone.status == "in_review"

        await milestone_service.approve(client_actor, str(milestone.id), rating=3)
        assert milestone.status == "approved"

    @pytest.mark.asyncio
    async def test_partial_release_keeps_agreement_running(
        self, funded_agreement, milestone_service, client_actor, developer_actor
    ) -> None:
        agreement = await funded_agreement(Decimal("300"), Decimal("700"))
        first, second = await milestone_service.list_for_agreement(client_actor, str(agreement.id))
        for milestone in (first, second):
            await milestone_service.start(developer_actor, str(milestone.id))
            await milestone_service.submit(developer_actor, str(milestone.id))

        await milestone_service.approve(client_actor, str(first.id), rating=5)
        assert agreement.status == "in_progress"
        assert agreement.released_amount == Decimal("300")
        assert agreement.remaining_amount == Decimal("700")
        assert agreement.escrow_status == "releasing"

        await milestone_service.approve(client_actor, str(second.id), rating=5)
        assert agreement.status == "awaiting_final_approval"
        assert agreement.escrow_status == "completed"


class TestEscrowRelease:
    @pytest.mark.asyncio
    async def test_cannot_release_more_than_remains(self, session, funded_agreement) -> None:
        agreement = await funded_agreement(Decimal("1000"))

        with pytest.raises(InsufficientEscrowError) as exc_info:
            await EscrowLedger(session).release_payment(agreement, Decimal("1500"))

        assert exc_info.value.code == "INSUFFICIENT_ESCROW"
        assert agreement.released_amount == Decimal("0")
        assert agreement.remaining_amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_release_sees_concurrent_release(self, session, funded_agreement) -> None:
        agreement = await funded_agreement(Decimal("400"), Decimal("600"))
        # Another request already released 600; this copy still shows 1000 remaining
        await session.execute(
            update(Agreement)
            .where(Agreement.id == agreement.id)
            .values(released_amount=Decimal("600"), remaining_amount=Decimal("400"))
            .execution_options(synchronize_session=False)
        )
        assert agreement.remaining_amount == Decimal("1000")

        with pytest.raises(InsufficientEscrowError):
            await EscrowLedger(session).release_payment(agreement, Decimal("600"))

        assert agreement.released_amount == Decimal("600")
        assert agreement.remaining_amount == Decimal("400")

        released = await AgreementRepository(session).release_funds(agreement, Decimal("400"))
        assert released is True


class TestRevisionsAndRejection:
    @pytest.mark.asyncio
    async def test_revision_loop(
        self, submitted, milestone_service, client_actor, developer_actor
    ) -> None:
        _, milestone = submitted

        await milestone_service.request_revision(
            client_actor, str(milestone.id), reason="Missing tests"
        )
        assert milestone.status == "revision_requested"
        assert milestone.revisions[0]["reason"] == "Missing tests"
        assert milestone.revisions[0]["revision_number"] == 1

        await milestone_service.mark_complete(developer_actor, str(milestone.id))
        assert milestone.status == "completed"

        await milestone_service.submit(developer_actor, str(milestone.id), notes="Tests added")
        assert milestone.status == "submitted"

    @pytest.mark.asyncio
    async def test_revision_needs_reason(
        self, submitted, milestone_service, client_actor
    ) -> None:
        _, milestone = submitted
        with pytest.raises(ValidationError, match="reason"):
            await milestone_service.request_revision(client_actor, str(milestone.id), reason="")

    @pytest.mark.asyncio
    async def test_reject(self, submitted, milestone_service, client_actor) -> None:
        agreement, milestone = submitted

        await milestone_service.reject(client_actor, str(milestone.id), reason="Not usable")

        assert milestone.status == "rejected"
        assert milestone.review_feedback == "Not usable"
        assert agreement.released_amount == Decimal("0")


class TestDraftMilestones:
    @pytest.mark.asyncio
    async def test_add_within_total(
        self, agreement_service, milestone_service, client_actor
    ) -> None:
        agreement = await agreement_service.create_agreement(
            client_actor,
            developer_wallet="0x8ba1f109551bd432803012645ac136ddd64dba72",
            title="Open budget",
            description="Milestones added later",
            total_value=Decimal("500"),
        )

        milestone = await milestone_service.create_milestone(
            client_actor, str(agreement.id), title="Spike", value=Decimal("200")
        )
        assert milestone.milestone_number == 1
        assert agreement.milestones_total == 1

        with pytest.raises(ValidationError, match="exceed"):
            await milestone_service.create_milestone(
                client_actor, str(agreement.id), title="Too big", value=Decimal("301")
            )

    @pytest.mark.asyncio
    async def test_delete_pending(
        self, create_agreement, milestone_service, client_actor
    ) -> None:
        agreement = await create_agreement(Decimal("400"), Decimal("600"))
        first, _ = await milestone_service.list_for_agreement(client_actor, str(agreement.id))

        await milestone_service.delete_milestone(client_actor, str(first.id))

        remaining = await milestone_service.list_for_agreement(client_actor, str(agreement.id))
        assert [m.title for m in remaining] == ["Milestone 2"]
        assert agreement.milestones_total == 1


class TestReads:
    @pytest.mark.asyncio
    async def test_statistics(
        self, submitted, milestone_service, client_actor
    ) -> None:
        stats = await milestone_service.get_statistics(client_actor)
        assert stats["total"] == 1
        assert stats["in_progress"] == 1
        assert stats["completed"] == 0
        assert stats["overdue"] == 0

    @pytest.mark.asyncio
    async def test_outsider_cannot_view(
        self, submitted, milestone_service, outsider_actor
    ) -> None:
        _, milestone = submitted
        with pytest.raises(AuthorizationError):
            await milestone_service.get_milestone(outsider_actor, str(milestone.id))
