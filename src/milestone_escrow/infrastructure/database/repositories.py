"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status changes go through compare-and-set UPDATEs keyed on the status the
caller read. If another request changed the row in between, the UPDATE
matches nothing and ConcurrentModificationError is raised.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, or_, select, update

from milestone_escrow.domain.enums import (
    EscrowStatus,
    MilestoneStatus,
    TransactionStatus,
)
from milestone_escrow.domain.exceptions import ConcurrentModificationError
from milestone_escrow.infrastructure.database.orm_models import (
    Agreement,
    AgreementEvent,
    Milestone,
    Modification,
    Transaction,
    User,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

    from milestone_escrow.domain.enums import EventType
    from milestone_escrow.domain.parties import Actor


def parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class _BaseRepository:
    """Session handling and the compare-and-set primitive shared by all repositories."""

    model: type

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, obj):  # noqa: ANN001, ANN201
        """Insert a new row and flush so server defaults and ids are populated."""
        self._session.add(obj)
        await self._session.flush()
        return obj

    async def save(self, obj):  # noqa: ANN001, ANN201
        """Flush in-place attribute changes on an already-persistent object."""
        await self._session.flush()
        return obj

    async def _compare_and_set(
        self,
        obj: Any,
        conditions: Sequence[ColumnElement[bool]],
        values: dict[str, Any],
    ) -> None:
        model = type(obj)
        # Push pending attribute changes first; refresh() below would discard them.
        await self._session.flush()
        result = await self._session.execute(
            update(model)
            .where(model.id == obj.id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(model.__name__, str(obj.id))
        await self._session.refresh(obj)

    async def transition(
        self,
        obj: Any,
        expected_status: str | Iterable[str],
        new_status: str,
        **values: Any,
    ) -> Any:
        """Move obj to new_status only if its stored status is still expected_status.

        Extra keyword arguments are written in the same UPDATE.
        """
        model = type(obj)
        expected = [expected_status] if isinstance(expected_status, str) else list(expected_status)
        await self._compare_and_set(
            obj,
            [model.status.in_([str(s) for s in expected])],
            {"status": str(new_status), **values},
        )
        return obj


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class UserRepository(_BaseRepository):
    """Read access to registered users plus atomic statistic increments."""

    model = User

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        result = await self._session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_wallet(self, wallet_address: str) -> User | None:
        result = await self._session.execute(
            select(User).where(func.lower(User.wallet_address) == wallet_address.lower())
        )
        return result.scalar_one_or_none()

    async def increment_stats(
        self,
        user_id: uuid.UUID,
        agreements_created: int = 0,
        agreements_completed: int = 0,
        total_earned: Decimal = Decimal("0"),
        total_spent: Decimal = Decimal("0"),
    ) -> None:
        """Increment counters in SQL so concurrent requests never lose an update."""
        await self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                agreements_created=User.agreements_created + agreements_created,
                agreements_completed=User.agreements_completed + agreements_completed,
                total_earned=User.total_earned + total_earned,
                total_spent=User.total_spent + total_spent,
            )
            .execution_options(synchronize_session=False)
        )


# ---------------------------------------------------------------------------
# Agreements
# ---------------------------------------------------------------------------
def _agreement_party_filter(actor: Actor, role: str | None = None) -> ColumnElement[bool]:
    wallet = actor.wallet_address.lower() if actor.wallet_address else None

    def side(id_column, wallet_column) -> list:  # noqa: ANN001
        clauses = []
        if actor.user_id is not None:
            clauses.append(id_column == actor.user_id)
        if wallet:
            clauses.append(wallet_column == wallet)
        return clauses

    client_side = side(Agreement.client_id, Agreement.client_wallet)
    developer_side = side(Agreement.developer_id, Agreement.developer_wallet)
    if role == "client":
        return or_(*client_side)
    if role == "developer":
        return or_(*developer_side)
    return or_(*client_side, *developer_side)


class AgreementRepository(_BaseRepository):
    """Data access for agreements and their escrow ledger."""

    model = Agreement

    async def get_by_id(self, agreement_id: uuid.UUID) -> Agreement | None:
        result = await self._session.execute(
            select(Agreement).where(Agreement.id == agreement_id)
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, agreement_code: str) -> Agreement | None:
        result = await self._session.execute(
            select(Agreement).where(Agreement.agreement_code == agreement_code)
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Agreement | None:
        """Look up by UUID or by AGR- code."""
        agreement_id = parse_uuid(reference)
        if agreement_id is not None:
            return await self.get_by_id(agreement_id)
        return await self.get_by_code(reference)

    async def list_for_actor(
        self,
        actor: Actor,
        status: str | None = None,
        role: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Agreement], int]:
        """Agreements where the actor is a party, newest first, with the total count."""
        conditions = [_agreement_party_filter(actor, role), Agreement.is_active.is_(True)]
        if status:
            conditions.append(Agreement.status == status)

        total = await self._session.scalar(
            select(func.count()).select_from(Agreement).where(*conditions)
        )
        result = await self._session.execute(
            select(Agreement)
            .where(*conditions)
            .order_by(Agreement.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def ids_for_actor(self, actor: Actor) -> list[uuid.UUID]:
        result = await self._session.execute(
            select(Agreement.id).where(
                _agreement_party_filter(actor), Agreement.is_active.is_(True)
            )
        )
        return list(result.scalars().all())

    async def count_by_status(self, actor: Actor, role: str | None = None) -> dict[str, int]:
        result = await self._session.execute(
            select(Agreement.status, func.count())
            .where(_agreement_party_filter(actor, role), Agreement.is_active.is_(True))
            .group_by(Agreement.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def release_funds(self, agreement: Agreement, amount: Decimal) -> bool:
        """Atomically move `amount` from remaining/held to released.

        Returns False (and changes nothing) if less than `amount` remains.
        """
        await self._session.flush()
        result = await self._session.execute(
            update(Agreement)
            .where(
                Agreement.id == agreement.id,
                Agreement.remaining_amount >= amount,
            )
            .values(
                released_amount=Agreement.released_amount + amount,
                remaining_amount=Agreement.remaining_amount - amount,
                escrow_held_amount=Agreement.escrow_held_amount - amount,
                escrow_status=case(
                    (Agreement.remaining_amount == amount, EscrowStatus.COMPLETED.value),
                    else_=EscrowStatus.RELEASING.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(agreement)
        return True

    async def set_party_id(
        self, agreement: Agreement, party_column: str, user_id: uuid.UUID
    ) -> bool:
        """Backfill client_id/developer_id only if it is still unset."""
        column = getattr(Agreement, party_column)
        await self._session.flush()
        result = await self._session.execute(
            update(Agreement)
            .where(Agreement.id == agreement.id, column.is_(None))
            .values({party_column: user_id})
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(agreement)
        return result.rowcount == 1

    async def compare_and_set(
        self,
        agreement: Agreement,
        conditions: Sequence[ColumnElement[bool]],
        **values: Any,
    ) -> Agreement:
        await self._compare_and_set(agreement, conditions, values)
        return agreement


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------
class MilestoneRepository(_BaseRepository):
    """Data access for milestones. Inactive (soft-deleted) rows are hidden by default."""

    model = Milestone

    async def get_by_id(
        self, milestone_id: uuid.UUID, include_inactive: bool = False
    ) -> Milestone | None:
        query = select(Milestone).where(Milestone.id == milestone_id)
        if not include_inactive:
            query = query.where(Milestone.is_active.is_(True))
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_agreement(self, agreement_id: uuid.UUID) -> list[Milestone]:
        """Active milestones of an agreement, ordered by number."""
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.agreement_id == agreement_id, Milestone.is_active.is_(True))
            .order_by(Milestone.milestone_number.asc())
        )
        return list(result.scalars().all())

    async def next_number(self, agreement_id: uuid.UUID) -> int:
        current = await self._session.scalar(
            select(func.max(Milestone.milestone_number)).where(
                Milestone.agreement_id == agreement_id, Milestone.is_active.is_(True)
            )
        )
        return int(current or 0) + 1

    async def soft_delete_by_agreement(self, agreement_id: uuid.UUID) -> int:
        """Deactivate every active milestone of an agreement; returns the count."""
        await self._session.flush()
        result = await self._session.execute(
            update(Milestone)
            .where(Milestone.agreement_id == agreement_id, Milestone.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def soft_delete(self, milestone: Milestone) -> Milestone:
        await self._compare_and_set(
            milestone,
            [Milestone.is_active.is_(True), Milestone.status == MilestoneStatus.PENDING.value],
            {"is_active": False},
        )
        return milestone

    async def mark_paid_on_approval(
        self,
        milestone: Milestone,
        expected_status: Iterable[str],
        **values: Any,
    ) -> Milestone:
        """Approve a milestone only if it is still reviewable AND not yet paid."""
        await self._compare_and_set(
            milestone,
            [
                Milestone.status.in_(list(expected_status)),
                Milestone.is_paid.is_(False),
            ],
            {"status": MilestoneStatus.APPROVED.value, **values},
        )
        return milestone

    async def get_overdue(
        self, agreement_ids: Sequence[uuid.UUID], now: datetime
    ) -> list[Milestone]:
        if not agreement_ids:
            return []
        result = await self._session.execute(
            select(Milestone)
            .where(
                Milestone.agreement_id.in_(agreement_ids),
                Milestone.is_active.is_(True),
                Milestone.due_date.is_not(None),
                Milestone.due_date < now,
                Milestone.status.not_in(
                    [
                        MilestoneStatus.APPROVED.value,
                        MilestoneStatus.PAID.value,
                        MilestoneStatus.REJECTED.value,
                    ]
                ),
            )
            .order_by(Milestone.due_date.asc())
        )
        return list(result.scalars().all())

    async def count_by_status(self, agreement_ids: Sequence[uuid.UUID]) -> dict[str, int]:
        if not agreement_ids:
            return {}
        result = await self._session.execute(
            select(Milestone.status, func.count())
            .where(Milestone.agreement_id.in_(agreement_ids), Milestone.is_active.is_(True))
            .group_by(Milestone.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def sum_values(self, agreement_id: uuid.UUID) -> Decimal:
        total = await self._session.scalar(
            select(func.coalesce(func.sum(Milestone.value), 0)).where(
                Milestone.agreement_id == agreement_id, Milestone.is_active.is_(True)
            )
        )
        return Decimal(str(total or 0))


# ---------------------------------------------------------------------------
# Modifications
# ---------------------------------------------------------------------------
class ModificationRepository(_BaseRepository):
    model = Modification

    async def get_by_id(self, modification_id: uuid.UUID) -> Modification | None:
        result = await self._session.execute(
            select(Modification).where(Modification.id == modification_id)
        )
        return result.scalar_one_or_none()

    async def get_by_agreement(self, agreement_id: uuid.UUID) -> list[Modification]:
        result = await self._session.execute(
            select(Modification)
            .where(Modification.agreement_id == agreement_id)
            .order_by(Modification.requested_at.asc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
def _transaction_party_filter(actor: Actor, role: str | None = None) -> ColumnElement[bool]:
    wallet = actor.wallet_address.lower() if actor.wallet_address else None
    sent, received = [], []
    if actor.user_id is not None:
        sent.append(Transaction.from_user_id == actor.user_id)
        received.append(Transaction.to_user_id == actor.user_id)
    if wallet:
        sent.append(Transaction.from_wallet == wallet)
        received.append(Transaction.to_wallet == wallet)
    if role == "sender":
        return or_(*sent)
    if role == "receiver":
        return or_(*received)
    return or_(*sent, *received)


class TransactionRepository(_BaseRepository):
    """Data access for the transaction ledger."""

    model = Transaction

    async def get_by_id(self, transaction_id: uuid.UUID) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Transaction | None:
        """Look up by UUID or by TXN- code."""
        transaction_id = parse_uuid(reference)
        if transaction_id is not None:
            return await self.get_by_id(transaction_id)
        result = await self._session.execute(
            select(Transaction).where(Transaction.transaction_code == reference)
        )
        return result.scalar_one_or_none()

    async def get_by_tx_hash(self, tx_hash: str) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(func.lower(Transaction.tx_hash) == tx_hash.lower())
        )
        return result.scalars().first()

    async def list_for_actor(
        self,
        actor: Actor,
        type_: str | None = None,
        status: str | None = None,
        role: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        conditions = [_transaction_party_filter(actor, role)]
        if type_:
            conditions.append(Transaction.type == type_)
        if status:
            conditions.append(Transaction.status == status)

        total = await self._session.scalar(
            select(func.count()).select_from(Transaction).where(*conditions)
        )
        result = await self._session.execute(
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def get_by_agreement(self, agreement_id: uuid.UUID) -> list[Transaction]:
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.agreement_id == agreement_id)
            .order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_milestone(self, milestone_id: uuid.UUID) -> list[Transaction]:
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.milestone_id == milestone_id)
            .order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def sum_amount(self, actor: Actor, role: str, since: datetime | None = None) -> Decimal:
        """Sum of completed amounts the actor sent or received."""
        query = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            _transaction_party_filter(actor, role),
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
        if since is not None:
            query = query.where(Transaction.completed_at >= since)
        return Decimal(str(await self._session.scalar(query) or 0))

    async def count(
        self,
        actor: Actor,
        status: str | None = None,
        since: datetime | None = None,
    ) -> int:
        query = select(func.count()).select_from(Transaction).where(
            _transaction_party_filter(actor)
        )
        if status:
            query = query.where(Transaction.status == status)
        if since is not None:
            query = query.where(Transaction.created_at >= since)
        return int(await self._session.scalar(query) or 0)

    async def totals_by_type(self, actor: Actor) -> list[tuple[str, int, Decimal, Decimal]]:
        """(type, count, amount, fees) per transaction type for completed rows."""
        result = await self._session.execute(
            select(
                Transaction.type,
                func.count(),
                func.coalesce(func.sum(Transaction.amount), 0),
                func.coalesce(func.sum(Transaction.total_fees), 0),
            )
            .where(
                _transaction_party_filter(actor),
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
            .group_by(Transaction.type)
        )
        return [
            (type_, int(count), Decimal(str(amount)), Decimal(str(fees)))
            for type_, count, amount, fees in result.all()
        ]


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------
class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        agreement_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "SYSTEM",
        milestone_id: uuid.UUID | None = None,
        metadata: dict | None = None,
    ) -> AgreementEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AgreementEvent(
            agreement_id=agreement_id,
            milestone_id=milestone_id,
            event_type=event_type.value,
            old_status=str(old_status) if old_status else None,
            new_status=str(new_status),
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_agreement(self, agreement_id: uuid.UUID) -> list[AgreementEvent]:
        """Fetch all events for an agreement in chronological order."""
        result = await self._session.execute(
            select(AgreementEvent)
            .where(AgreementEvent.agreement_id == agreement_id)
            .order_by(AgreementEvent.created_at.asc())
        )
        return list(result.scalars().all())
