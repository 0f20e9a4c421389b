"""Milestone Workflow - per-milestone work, review and payment.

Coordinates:
    - MilestoneStateMachine (transition guard)
    - EscrowLedger (release on approval)
    - TransactionService (milestone_payment records)
    - Event log (audit trail)

Approval is the money-moving step. It runs as one unit inside the request
transaction:
    1. compare-and-set: status in (submitted, in_review) AND is_paid = false
    2. conditional release of `value` from the agreement's escrow
    3. milestone_payment transaction referencing agreement and milestone
A second approval of the same milestone fails at step 1 and nothing else runs.

The agreement follows its milestones: the first milestone started moves an
active agreement to in_progress, and approving the last open milestone
moves an in_progress agreement to awaiting_final_approval.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.enums import (
    WORKING_AGREEMENT_STATUSES,
    AgreementStatus,
    EventType,
    MilestoneStatus,
    Party,
    TransactionType,
)
from milestone_escrow.domain.exceptions import (
    MilestoneNotFoundError,
    ValidationError,
)
from milestone_escrow.domain.fees import quantize_amount
from milestone_escrow.domain.parties import require_party
from milestone_escrow.domain.state_machine import (
    AgreementStateMachine,
    MilestoneStateMachine,
)
from milestone_escrow.infrastructure.database.orm_models import Milestone
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    EventRepository,
    MilestoneRepository,
    parse_uuid,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.guards import fire_transition, get_agreement_or_raise
from milestone_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.parties import Actor
    from milestone_escrow.domain.protocols import StorageUploader, UploadedFile
    from milestone_escrow.infrastructure.database.orm_models import Agreement

logger = get_logger(__name__)

# Developer work happens while the agreement is running; the client may
# still review while final approval is pending.
_DEVELOPER_WORK_STATUSES = frozenset({AgreementStatus.ACTIVE, AgreementStatus.IN_PROGRESS})

_SETTLED_STATUSES = frozenset({MilestoneStatus.APPROVED, MilestoneStatus.PAID})
_EDITABLE_STATUSES = frozenset({MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS})


class MilestoneService:
    """Manages milestones and the agreement progress they drive."""

    def __init__(
        self,
        session: AsyncSession,
        uploader: StorageUploader | None = None,
        max_upload_files: int = 10,
    ) -> None:
        self._session = session
        self._milestone_repo = MilestoneRepository(session)
        self._agreement_repo = AgreementRepository(session)
        self._event_repo = EventRepository(session)
        self._ledger = EscrowLedger(session)
        self._transactions = TransactionService(session)
        self._uploader = uploader
        self._max_upload_files = max_upload_files

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    async def create_milestone(
        self,
        actor: Actor,
        agreement_ref: str,
        title: str,
        value: Decimal,
        description: str | None = None,
        deliverables: list | None = None,
        start_date: datetime | None = None,
        due_date: datetime | None = None,
    ) -> Milestone:
        """Add a milestone to a draft agreement. Client only."""
        agreement = await get_agreement_or_raise(self._agreement_repo, agreement_ref)
        require_party(agreement, actor, Party.CLIENT, action="add milestones")
        if agreement.status != AgreementStatus.DRAFT:
            raise ValidationError(
                f"Milestones can only be added while the agreement is a draft "
                f"(current status '{agreement.status}')"
            )

        value = quantize_amount(value)
        allocated = await self._milestone_repo.sum_values(agreement.id)
        if allocated + value > agreement.total_value:
            raise ValidationError(
                f"Milestone values ({allocated + value}) would exceed the agreement "
                f"total ({agreement.total_value})",
                errors=[{"field": "value", "message": "exceeds remaining agreement value"}],
            )

        milestone = await self._milestone_repo.add(
            Milestone(
                agreement_id=agreement.id,
                milestone_number=await self._milestone_repo.next_number(agreement.id),
                title=title,
                description=description,
                deliverables=list(deliverables or []),
                value=value,
                currency=agreement.currency,
                start_date=start_date,
                due_date=due_date,
                status=MilestoneStatus.PENDING.value,
                revisions=[],
            )
        )
        await self._record(agreement, milestone, EventType.MILESTONE_CREATED, None, actor.label)
        await self.refresh_stats(agreement)

        logger.info(
            "milestone.created",
            agreement_code=agreement.agreement_code,
            milestone_number=milestone.milestone_number,
            value=str(value),
        )
        return milestone

    async def replace_milestones(
        self, agreement: Agreement, specs: list[dict], actor: Actor
    ) -> list[Milestone]:
        """Soft-delete the current set and create `specs` numbered 1..N."""
        removed = await self._milestone_repo.soft_delete_by_agreement(agreement.id)
        created = []
        for number, spec in enumerate(specs, start=1):
            milestone = await self._milestone_repo.add(
                Milestone(
                    agreement_id=agreement.id,
                    milestone_number=number,
                    title=spec["title"],
                    description=spec.get("description"),
                    deliverables=list(spec.get("deliverables") or []),
                    value=quantize_amount(spec["value"]),
                    currency=agreement.currency,
                    start_date=spec.get("start_date"),
                    due_date=spec.get("due_date"),
                    status=MilestoneStatus.PENDING.value,
                    revisions=[],
                )
            )
            await self._record(
                agreement, milestone, EventType.MILESTONE_CREATED, None, actor.label
            )
            created.append(milestone)

        await self.refresh_stats(agreement)
        logger.info(
            "milestone.set_replaced",
            agreement_code=agreement.agreement_code,
            removed=removed,
            created=len(created),
        )
        return created

    async def update_milestone(self, actor: Actor, milestone_ref: str, **fields: Any) -> Milestone:
        """Edit title, description, deliverables or due date of an open milestone."""
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, action="update milestones")
        if milestone.status not in _EDITABLE_STATUSES:
            raise ValidationError(
                f"Milestone in status '{milestone.status}' can no longer be edited"
            )

        for name in ("title", "description", "deliverables", "due_date"):
            if fields.get(name) is not None:
                setattr(milestone, name, fields[name])
        await self._milestone_repo.save(milestone)

        logger.info("milestone.updated", milestone_id=str(milestone.id), fields=sorted(fields))
        return milestone

    async def delete_milestone(self, actor: Actor, milestone_ref: str) -> Milestone:
        """Soft-delete a pending milestone of a draft agreement. Client only."""
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.CLIENT, action="remove milestones")
        if agreement.status != AgreementStatus.DRAFT:
            raise ValidationError("Milestones can only be removed while the agreement is a draft")
        if milestone.status != MilestoneStatus.PENDING:
            raise ValidationError(
                f"Only pending milestones can be removed (current status '{milestone.status}')"
            )

        await self._milestone_repo.soft_delete(milestone)
        await self._record(
            agreement, milestone, EventType.MILESTONE_REMOVED, milestone.status, actor.label
        )
        await self.refresh_stats(agreement)
        logger.info("milestone.removed", milestone_id=str(milestone.id))
        return milestone

    # ------------------------------------------------------------------
    # Developer actions
    # ------------------------------------------------------------------

    async def start(self, actor: Actor, milestone_ref: str) -> Milestone:
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.DEVELOPER, action="start milestones")
        self._require_agreement_status(agreement, _DEVELOPER_WORK_STATUSES)

        await self._advance(
            agreement, milestone, "start", EventType.MILESTONE_STARTED, actor,
            start_date=milestone.start_date or datetime.now(UTC),
        )
        if agreement.status == AgreementStatus.ACTIVE:
            await self._advance_agreement(
                agreement, "start_work", EventType.WORK_STARTED,
                {"milestone_number": milestone.milestone_number},
            )
        return milestone

    async def mark_complete(self, actor: Actor, milestone_ref: str) -> Milestone:
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.DEVELOPER, action="complete milestones")
        self._require_agreement_status(agreement, _DEVELOPER_WORK_STATUSES)

        await self._advance(
            agreement, milestone, "mark_complete", EventType.MILESTONE_COMPLETED, actor,
            completed_date=datetime.now(UTC),
        )
        return milestone

    async def submit(
        self,
        actor: Actor,
        milestone_ref: str,
        notes: str | None = None,
        files: list[UploadedFile] | None = None,
    ) -> Milestone:
        """Hand in work for review, storing any evidence files first."""
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.DEVELOPER, action="submit milestones")
        self._require_agreement_status(agreement, _DEVELOPER_WORK_STATUSES)
        fire_transition(MilestoneStateMachine, "milestone", milestone.status, "submit")

        files = files or []
        if len(files) > self._max_upload_files:
            raise ValidationError(
                f"At most {self._max_upload_files} files can be submitted at once",
                errors=[{"field": "files", "message": "too many files"}],
            )
        if files and self._uploader is None:
            raise ValidationError("File uploads are not configured")

        stored = [(await self._uploader.store(file)).to_dict() for file in files]
        now = datetime.now(UTC)
        submission = {
            "submitted_by": actor.label,
            "submitted_at": now.isoformat(),
            "notes": notes,
            "files": stored,
        }
        await self._advance(
            agreement, milestone, "submit", EventType.MILESTONE_SUBMITTED, actor,
            metadata={"files": len(stored)},
            submission=submission,
            completed_date=milestone.completed_date or now,
        )
        return milestone

    # ------------------------------------------------------------------
    # Client actions
    # ------------------------------------------------------------------

    async def begin_review(self, actor: Actor, milestone_ref: str) -> Milestone:
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.CLIENT, action="review milestones")
        self._require_agreement_status(agreement, WORKING_AGREEMENT_STATUSES)

        await self._advance(
            agreement, milestone, "begin_review", EventType.MILESTONE_IN_REVIEW, actor
        )
        return milestone

    async def approve(
        self,
        actor: Actor,
        milestone_ref: str,
        rating: int,
        feedback: str | None = None,
    ) -> Milestone:
        """Approve a submitted milestone and release its value to the developer."""
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.CLIENT, action="approve milestones")
        self._require_agreement_status(agreement, WORKING_AGREEMENT_STATUSES)
        old_status = milestone.status
        fire_transition(MilestoneStateMachine, "milestone", old_status, "approve")
        if rating is None or not 1 <= int(rating) <= 5:
            raise ValidationError(
                "Rating must be between 1 and 5",
                errors=[{"field": "rating", "message": "must be between 1 and 5"}],
            )

        now = datetime.now(UTC)
        await self._milestone_repo.mark_paid_on_approval(
            milestone,
            [MilestoneStatus.SUBMITTED.value, MilestoneStatus.IN_REVIEW.value],
            approved_date=now,
            review_rating=int(rating),
            review_feedback=feedback,
            reviewed_by=actor.label,
            reviewed_at=now,
            is_paid=True,
            paid_at=now,
        )
        await self._record(
            agreement, milestone, EventType.MILESTONE_APPROVED, old_status, actor.label,
            {"rating": int(rating)},
        )

        if milestone.value > 0:
            await self._ledger.release_payment(agreement, milestone.value)
            transaction = await self._transactions.record_payment(
                TransactionType.MILESTONE_PAYMENT,
                agreement,
                milestone.value,
                initiated_by=actor,
                milestone=milestone,
                description=f"Payment for milestone {milestone.milestone_number}: {milestone.title}",
            )
            milestone.payment_transaction_id = transaction.id
            await self._milestone_repo.save(milestone)
            await self._event_repo.record(
                agreement_id=agreement.id,
                milestone_id=milestone.id,
                event_type=EventType.PAYMENT_RELEASED,
                old_status=agreement.status,
                new_status=agreement.status,
                actor=actor.label,
                metadata={
                    "amount": str(milestone.value),
                    "transaction_code": transaction.transaction_code,
                    "released_amount": str(agreement.released_amount),
                    "remaining_amount": str(agreement.remaining_amount),
                },
            )

        await self.refresh_stats(agreement)
        await self._request_final_approval_if_done(agreement)

        logger.info(
            "milestone.approved",
            agreement_code=agreement.agreement_code,
            milestone_number=milestone.milestone_number,
            released=str(milestone.value),
            rating=int(rating),
        )
        return milestone

    async def request_revision(self, actor: Actor, milestone_ref: str, reason: str) -> Milestone:
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.CLIENT, action="request revisions")
        self._require_agreement_status(agreement, WORKING_AGREEMENT_STATUSES)
        if not reason or not reason.strip():
            raise ValidationError(
                "A reason is required to request a revision",
                errors=[{"field": "reason", "message": "required"}],
            )

        revisions = list(milestone.revisions or [])
        revisions.append(
            {
                "revision_number": len(revisions) + 1,
                "requested_by": actor.label,
                "requested_at": datetime.now(UTC).isoformat(),
                "reason": reason.strip(),
            }
        )
        await self._advance(
            agreement, milestone, "request_revision", EventType.MILESTONE_REVISION_REQUESTED,
            actor,
            metadata={"revision_number": len(revisions), "reason": reason.strip()},
            revisions=revisions,
        )
        return milestone

    async def reject(self, actor: Actor, milestone_ref: str, reason: str) -> Milestone:
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, Party.CLIENT, action="reject milestones")
        self._require_agreement_status(agreement, WORKING_AGREEMENT_STATUSES)
        if not reason or not reason.strip():
            raise ValidationError(
                "A reason is required to reject a milestone",
                errors=[{"field": "reason", "message": "required"}],
            )

        now = datetime.now(UTC)
        await self._advance(
            agreement, milestone, "reject", EventType.MILESTONE_REJECTED, actor,
            metadata={"reason": reason.strip()},
            review_feedback=reason.strip(),
            reviewed_by=actor.label,
            reviewed_at=now,
        )
        await self.refresh_stats(agreement)
        return milestone

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_milestone(self, actor: Actor, milestone_ref: str) -> Milestone:
        milestone, agreement = await self._load(milestone_ref)
        require_party(agreement, actor, action="view this milestone")
        return milestone

    async def list_for_agreement(self, actor: Actor, agreement_ref: str) -> list[Milestone]:
        agreement = await get_agreement_or_raise(self._agreement_repo, agreement_ref)
        require_party(agreement, actor, action="view these milestones")
        return await self._milestone_repo.get_by_agreement(agreement.id)

    async def get_overdue(self, actor: Actor) -> list[Milestone]:
        agreement_ids = await self._agreement_repo.ids_for_actor(actor)
        return await self._milestone_repo.get_overdue(agreement_ids, datetime.now(UTC))

    async def get_statistics(self, actor: Actor) -> dict:
        agreement_ids = await self._agreement_repo.ids_for_actor(actor)
        by_status = await self._milestone_repo.count_by_status(agreement_ids)
        overdue = await self._milestone_repo.get_overdue(agreement_ids, datetime.now(UTC))
        return {
            "total": sum(by_status.values()),
            "completed": sum(by_status.get(s, 0) for s in _SETTLED_STATUSES),
            "in_progress": sum(
                by_status.get(s, 0)
                for s in (
                    MilestoneStatus.IN_PROGRESS,
                    MilestoneStatus.SUBMITTED,
                    MilestoneStatus.IN_REVIEW,
                    MilestoneStatus.REVISION_REQUESTED,
                    MilestoneStatus.COMPLETED,
                )
            ),
            "pending": by_status.get(MilestoneStatus.PENDING, 0),
            "overdue": len(overdue),
            "by_status": by_status,
        }

    # ------------------------------------------------------------------
    # Agreement bookkeeping
    # ------------------------------------------------------------------

    async def refresh_stats(self, agreement: Agreement) -> None:
        """Recompute the milestone counters cached on the agreement."""
        milestones = await self._milestone_repo.get_by_agreement(agreement.id)
        statuses = [m.status for m in milestones]
        agreement.milestones_total = len(statuses)
        agreement.milestones_completed = sum(
            1
            for s in statuses
            if s in (MilestoneStatus.COMPLETED, MilestoneStatus.APPROVED, MilestoneStatus.PAID)
        )
        agreement.milestones_approved = sum(1 for s in statuses if s in _SETTLED_STATUSES)
        agreement.milestones_pending = sum(
            1 for s in statuses if s not in _SETTLED_STATUSES and s != MilestoneStatus.REJECTED
        )
        await self._agreement_repo.save(agreement)

    async def _request_final_approval_if_done(self, agreement: Agreement) -> None:
        if agreement.status != AgreementStatus.IN_PROGRESS:
            return
        milestones = await self._milestone_repo.get_by_agreement(agreement.id)
        if milestones and all(m.status in _SETTLED_STATUSES for m in milestones):
            await self._advance_agreement(
                agreement, "request_final_approval", EventType.FINAL_APPROVAL_REQUESTED,
                {"milestones": len(milestones)},
            )

    async def _advance_agreement(
        self, agreement: Agreement, event_name: str, event_type: EventType, metadata: dict
    ) -> None:
        old_status = agreement.status
        new_status = fire_transition(AgreementStateMachine, "agreement", old_status, event_name)
        await self._agreement_repo.transition(agreement, old_status, new_status)
        await self._event_repo.record(
            agreement_id=agreement.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor="SYSTEM",
            metadata=metadata,
        )
        logger.info(
            "agreement.auto_transition",
            agreement_code=agreement.agreement_code,
            old_status=old_status,
            new_status=new_status,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _load(self, milestone_ref: str) -> tuple[Milestone, Agreement]:
        milestone_id = parse_uuid(milestone_ref)
        milestone = (
            await self._milestone_repo.get_by_id(milestone_id) if milestone_id else None
        )
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_ref))
        agreement = await get_agreement_or_raise(
            self._agreement_repo, str(milestone.agreement_id)
        )
        return milestone, agreement

    @staticmethod
    def _require_agreement_status(agreement: Agreement, allowed: frozenset) -> None:
        if agreement.status not in allowed:
            raise ValidationError(
                f"Milestone work is not possible while the agreement is '{agreement.status}'",
                code="AGREEMENT_NOT_ACTIVE",
            )

    async def _advance(
        self,
        agreement: Agreement,
        milestone: Milestone,
        event_name: str,
        event_type: EventType,
        actor: Actor,
        metadata: dict | None = None,
        **values: Any,
    ) -> None:
        old_status = milestone.status
        new_status = fire_transition(MilestoneStateMachine, "milestone", old_status, event_name)
        await self._milestone_repo.transition(milestone, old_status, new_status, **values)
        await self._record(agreement, milestone, event_type, old_status, actor.label, metadata)
        logger.info(
            "milestone.transitioned",
            milestone_id=str(milestone.id),
            transition=event_name,
            old_status=old_status,
            new_status=new_status,
        )

    async def _record(
        self,
        agreement: Agreement,
        milestone: Milestone,
        event_type: EventType,
        old_status: str | None,
        actor_label: str,
        metadata: dict | None = None,
    ) -> None:
        await self._event_repo.record(
            agreement_id=agreement.id,
            milestone_id=milestone.id,
            event_type=event_type,
            old_status=old_status,
            new_status=milestone.status,
            actor=actor_label,
            metadata={"milestone_number": milestone.milestone_number, **(metadata or {})},
        )
