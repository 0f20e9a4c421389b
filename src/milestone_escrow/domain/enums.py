"""Domain enumerations for the Milestone Escrow marketplace.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class AgreementStatus(enum.StrEnum):
    """Lifecycle states of a client/developer agreement.

    State transitions are enforced by the AgreementStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    DRAFT = "draft"
    PENDING_DEVELOPER = "pending_developer"
    PENDING_CLIENT = "pending_client"
    PENDING_SIGNATURES = "pending_signatures"
    ESCROW_DEPOSIT = "escrow_deposit"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    AWAITING_FINAL_APPROVAL = "awaiting_final_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


TERMINAL_AGREEMENT_STATUSES = frozenset({AgreementStatus.COMPLETED, AgreementStatus.CANCELLED})

# Statuses in which milestone work may happen.
WORKING_AGREEMENT_STATUSES = frozenset(
    {
        AgreementStatus.ACTIVE,
        AgreementStatus.IN_PROGRESS,
        AgreementStatus.AWAITING_FINAL_APPROVAL,
    }
)


class MilestoneStatus(enum.StrEnum):
    """Lifecycle states of a single milestone."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of a ledger transaction. Forward-only."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionType(enum.StrEnum):
    """Kinds of financial movement recorded in the transaction ledger."""

    ESCROW_DEPOSIT = "escrow_deposit"
    MILESTONE_PAYMENT = "milestone_payment"
    FINAL_PAYMENT = "final_payment"
    REFUND = "refund"
    PLATFORM_FEE = "platform_fee"
    WITHDRAWAL = "withdrawal"
    OTHER = "other"


class EscrowStatus(enum.StrEnum):
    """State of the recorded escrow holding inside an agreement."""

    PENDING = "pending"
    LOCKED = "locked"
    RELEASING = "releasing"
    COMPLETED = "completed"


class ModificationType(enum.StrEnum):
    """Kinds of change request a party may raise against an agreement."""

    SCOPE_CHANGE = "scope_change"
    TIMELINE_CHANGE = "timeline_change"
    PAYMENT_CHANGE = "payment_change"
    MILESTONE_CHANGE = "milestone_change"
    OTHER = "other"


class ModificationStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Currency(enum.StrEnum):
    ETH = "ETH"
    USD = "USD"


class Network(enum.StrEnum):
    """EVM networks the blockchain verifier knows how to reach."""

    MAINNET = "mainnet"
    SEPOLIA = "sepolia"
    GOERLI = "goerli"
    POLYGON = "polygon"
    MUMBAI = "mumbai"
    LOCAL = "local"


class UserRole(enum.StrEnum):
    CLIENT = "client"
    DEVELOPER = "developer"
    BOTH = "both"


class Party(enum.StrEnum):
    """The caller's role relative to one specific agreement."""

    CLIENT = "client"
    DEVELOPER = "developer"
    NEITHER = "neither"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the agreement_events table.

    Every agreement or milestone state transition MUST produce exactly one event.
    """

    # Agreement negotiation
    AGREEMENT_CREATED = "AGREEMENT_CREATED"
    AGREEMENT_UPDATED = "AGREEMENT_UPDATED"
    SUBMITTED_TO_DEVELOPER = "SUBMITTED_TO_DEVELOPER"
    DEVELOPER_ACCEPTED = "DEVELOPER_ACCEPTED"
    DEVELOPER_DECLINED = "DEVELOPER_DECLINED"
    AGREEMENT_SIGNED = "AGREEMENT_SIGNED"

    # Escrow
    ESCROW_FUNDED = "ESCROW_FUNDED"
    PAYMENT_RELEASED = "PAYMENT_RELEASED"

    # Agreement execution
    WORK_STARTED = "WORK_STARTED"
    FINAL_APPROVAL_REQUESTED = "FINAL_APPROVAL_REQUESTED"
    AGREEMENT_COMPLETED = "AGREEMENT_COMPLETED"
    AGREEMENT_CANCELLED = "AGREEMENT_CANCELLED"
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Modifications
    MODIFICATION_REQUESTED = "MODIFICATION_REQUESTED"
    MODIFICATION_APPROVED = "MODIFICATION_APPROVED"
    MODIFICATION_REJECTED = "MODIFICATION_REJECTED"

    # Milestones
    MILESTONE_CREATED = "MILESTONE_CREATED"
    MILESTONE_STARTED = "MILESTONE_STARTED"
    MILESTONE_COMPLETED = "MILESTONE_COMPLETED"
    MILESTONE_SUBMITTED = "MILESTONE_SUBMITTED"
    MILESTONE_IN_REVIEW = "MILESTONE_IN_REVIEW"
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    MILESTONE_REVISION_REQUESTED = "MILESTONE_REVISION_REQUESTED"
    MILESTONE_REJECTED = "MILESTONE_REJECTED"
    MILESTONE_PAID = "MILESTONE_PAID"
    MILESTONE_REMOVED = "MILESTONE_REMOVED"
