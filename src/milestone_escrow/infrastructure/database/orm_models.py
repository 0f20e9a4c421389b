"""SQLAlchemy 2.0 ORM models for the Milestone Escrow service.

Six tables:
    1. users             - Registered identities (owned by the identity service).
    2. agreements        - Client/developer contracts with their escrow ledger.
    3. milestones        - Billable units of work within an agreement.
    4. modifications     - Change requests raised against an agreement.
    5. transactions      - Ledger of every financial movement.
    6. agreement_events  - Append-only audit log of every state transition.

Design decisions:
    - UUIDs as primary keys, plus human-readable AGR-/TXN- codes.
    - Decimal amounts with 18 decimal places (wei precision), never floats.
    - JSON (JSONB on PostgreSQL) for document-like fields: deliverables,
      terms, submission, revisions, blockchain proof.
    - No ORM relationships: every cross-table read goes through a repository,
      which keeps async sessions free of implicit lazy loads.
    - CHECK constraints on status columns to reject invalid enum values at DB level.
    - agreement_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from milestone_escrow.domain.enums import (
    AgreementStatus,
    MilestoneStatus,
    ModificationStatus,
    TransactionStatus,
    TransactionType,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
AmountType = Numeric(36, 18)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def as_aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _status_check(column: str, values: list[str], name: str) -> CheckConstraint:
    quoted = ", ".join(f"'{v}'" for v in values)
    return CheckConstraint(f"{column} IN ({quoted})", name=name)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. users
# ---------------------------------------------------------------------------
class User(Base):
    """A registered marketplace user. Only lifetime statistics are written here."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_address: Mapped[str | None] = mapped_column(
        String(42),
        unique=True,
        nullable=True,
        comment="Lowercased EVM wallet address",
    )
    display_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="both")

    # --- Lifetime statistics ---
    agreements_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    agreements_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earned: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)
    total_spent: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("role IN ('client', 'developer', 'both')", name="ck_user_valid_role"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} wallet={self.wallet_address}>"


# ---------------------------------------------------------------------------
# 2. agreements
# ---------------------------------------------------------------------------
class Agreement(Base):
    """A contract binding one client and one developer to a scope and a price."""

    __tablename__ = "agreements"

    # --- Identity ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_code: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
        comment="Human-readable id, AGR-<epoch ms>-<6 chars>",
    )

    # --- Parties (ids are backfilled once a wallet-only party registers) ---
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    client_wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    developer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    developer_wallet: Mapped[str] = mapped_column(String(42), nullable=False)

    # --- Project ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliverables: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expected_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    actual_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    terms: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="payment_terms, cancellation_policy, revision_policy, communication",
    )

    # --- Financials ---
    total_value: Mapped[Decimal] = mapped_column(AmountType, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="ETH")
    released_amount: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)
    remaining_amount: Mapped[Decimal] = mapped_column(AmountType, nullable=False)
    platform_fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("2.5")
    )
    platform_fee_amount: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)

    # --- Escrow ledger ---
    escrow_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    escrow_held_amount: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AgreementStatus.DRAFT.value,
        comment="Current lifecycle state (guarded by AgreementStateMachine)",
    )

    # --- Milestone statistics (derived cache, refreshed by the milestone service) ---
    milestones_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    milestones_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    milestones_approved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    milestones_pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Signatures (stored as given, no cryptographic verification) ---
    client_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    client_signed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    client_signature_wallet: Mapped[str | None] = mapped_column(String(42), nullable=True)
    client_signature_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_signature_hash: Mapped[str | None] = mapped_column(String(200), nullable=True)
    developer_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    developer_signed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    developer_signature_wallet: Mapped[str | None] = mapped_column(String(42), nullable=True)
    developer_signature_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    developer_signature_hash: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # --- Blockchain proof (write-once) ---
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    blockchain_block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    blockchain_ipfs_hashes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    blockchain_network: Mapped[str | None] = mapped_column(String(20), nullable=True)
    blockchain_contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    blockchain_recorded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # --- Termination ---
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        _status_check("status", [s.value for s in AgreementStatus], "ck_agreement_valid_status"),
        CheckConstraint(
            "escrow_status IN ('pending', 'locked', 'releasing', 'completed')",
            name="ck_agreement_valid_escrow_status",
        ),
        CheckConstraint("total_value >= 0", name="ck_agreement_non_negative_total"),
        CheckConstraint("released_amount >= 0", name="ck_agreement_non_negative_released"),
        CheckConstraint("remaining_amount >= 0", name="ck_agreement_non_negative_remaining"),
        CheckConstraint("released_amount <= total_value", name="ck_agreement_release_bound"),
        Index("idx_agreement_status", "status"),
        Index("idx_agreement_client", "client_id"),
        Index("idx_agreement_developer", "developer_id"),
        Index("idx_agreement_client_wallet", "client_wallet"),
        Index("idx_agreement_developer_wallet", "developer_wallet"),
        Index("idx_agreement_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Agreement code={self.agreement_code} status={self.status} "
            f"total={self.total_value} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 3. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    """One billable, independently approvable unit of work."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_number: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="1-based, unique among active milestones"
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliverables: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # --- Financials ---
    value: Mapped[Decimal] = mapped_column(AmountType, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="ETH")
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # --- Timeline ---
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    approved_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=MilestoneStatus.PENDING.value,
        comment="Current workflow state (guarded by MilestoneStateMachine)",
    )

    # --- Work product ---
    submission: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="submitted_by, submitted_at, notes, files",
    )
    review_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    review_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revisions: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Append-only list of revision requests",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        _status_check("status", [s.value for s in MilestoneStatus], "ck_milestone_valid_status"),
        CheckConstraint("value >= 0", name="ck_milestone_non_negative_value"),
        CheckConstraint(
            "review_rating IS NULL OR (review_rating >= 1 AND review_rating <= 5)",
            name="ck_milestone_rating_bounds",
        ),
        Index("idx_milestone_agreement", "agreement_id"),
        Index("idx_milestone_status", "status"),
        Index("idx_milestone_due_date", "due_date"),
    )

    @property
    def is_overdue(self) -> bool:
        due = as_aware(self.due_date)
        if due is None or self.status in (
            MilestoneStatus.APPROVED,
            MilestoneStatus.PAID,
            MilestoneStatus.REJECTED,
        ):
            return False
        return due < _utcnow()

    @property
    def days_remaining(self) -> int | None:
        due = as_aware(self.due_date)
        if due is None:
            return None
        return (due - _utcnow()).days

    @property
    def revision_count(self) -> int:
        return len(self.revisions or [])

    def __repr__(self) -> str:
        return (
            f"<Milestone id={self.id} #{self.milestone_number} "
            f"status={self.status} value={self.value}>"
        )


# ---------------------------------------------------------------------------
# 4. modifications
# ---------------------------------------------------------------------------
class Modification(Base):
    """A change request raised by one party and answered by the other."""

    __tablename__ = "modifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id", ondelete="CASCADE"),
        nullable=False,
    )
    requested_by_party: Mapped[str] = mapped_column(String(20), nullable=False)
    requested_by: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="Wallet or user id of the requester"
    )
    modification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    previous_value: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ModificationStatus.PENDING.value
    )
    responded_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    response_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    responded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_modification_valid_status",
        ),
        CheckConstraint(
            "modification_type IN ('scope_change', 'timeline_change', 'payment_change', "
            "'milestone_change', 'other')",
            name="ck_modification_valid_type",
        ),
        Index("idx_modification_agreement", "agreement_id"),
    )

    def __repr__(self) -> str:
        return f"<Modification id={self.id} type={self.modification_type} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. transactions
# ---------------------------------------------------------------------------
class Transaction(Base):
    """A financial movement. Immutable once it reaches a terminal status."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_code: Mapped[str] = mapped_column(
        String(40),
        unique=True,
        nullable=False,
        comment="Human-readable id, TXN-<type initials>-<epoch ms>-<6 chars>",
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)

    # --- References ---
    agreement_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("agreements.id", ondelete="SET NULL"), nullable=True
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True
    )

    # --- Counterparties ---
    from_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    from_wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    to_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    to_wallet: Mapped[str] = mapped_column(String(42), nullable=False)

    # --- Amount ---
    amount: Mapped[Decimal] = mapped_column(AmountType, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="ETH")
    usd_value: Mapped[Decimal | None] = mapped_column(Numeric(20, 2), nullable=True)

    # --- Fees ---
    platform_fee: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)
    network_fee: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)
    total_fees: Mapped[Decimal] = mapped_column(AmountType, nullable=False, default=0)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        comment="Forward-only lifecycle (guarded by TransactionStateMachine)",
    )

    # --- Blockchain proof ---
    is_on_chain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    network: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    gas_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gas_price: Mapped[str | None] = mapped_column(
        String(40), nullable=True, comment="Wei, as a decimal string"
    )
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Failure ---
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Timestamps ---
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        _status_check(
            "status", [s.value for s in TransactionStatus], "ck_transaction_valid_status"
        ),
        _status_check("type", [t.value for t in TransactionType], "ck_transaction_valid_type"),
        CheckConstraint("amount >= 0", name="ck_transaction_non_negative_amount"),
        Index("idx_transaction_agreement", "agreement_id"),
        Index("idx_transaction_milestone", "milestone_id"),
        Index("idx_transaction_from_user", "from_user_id"),
        Index("idx_transaction_to_user", "to_user_id"),
        Index("idx_transaction_from_wallet", "from_wallet"),
        Index("idx_transaction_to_wallet", "to_wallet"),
        Index("idx_transaction_status", "status"),
        Index("idx_transaction_tx_hash", "tx_hash"),
    )

    @property
    def net_amount(self) -> Decimal:
        return self.amount - (self.total_fees or 0)

    def __repr__(self) -> str:
        return (
            f"<Transaction code={self.transaction_code} type={self.type} "
            f"status={self.status} amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# 6. agreement_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class AgreementEvent(Base):
    """Immutable audit record of every agreement or milestone state transition.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level. Every row represents a single atomic event.
    """

    __tablename__ = "agreement_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        comment="Set when the event concerns a single milestone",
    )

    # --- Event Details ---
    event_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="EventType enum value (e.g., ESCROW_FUNDED, MILESTONE_APPROVED)",
    )
    old_status: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        comment="Status before this event (null for creation)",
    )
    new_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Status after this event",
    )
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Who triggered this event (wallet address, user id or SYSTEM)",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
        comment="Arbitrary context: tx hash, amounts, reasons",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_agreement", "agreement_id"),
        Index("idx_event_milestone", "milestone_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AgreementEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (User, Agreement, Milestone, Transaction):
    event.listen(_model, "before_update", _set_updated_at)

# Milestone numbers are unique among the active milestones of an agreement;
# soft-deleted rows keep their old numbers.
Index(
    "uq_milestone_active_number",
    Milestone.agreement_id,
    Milestone.milestone_number,
    unique=True,
    postgresql_where=Milestone.is_active,
    sqlite_where=Milestone.is_active,
)
