"""Domain layer - pure business logic with zero framework dependencies."""

from milestone_escrow.domain.enums import (
    AgreementStatus,
    EventType,
    MilestoneStatus,
    Party,
    TransactionStatus,
    TransactionType,
)
from milestone_escrow.domain.exceptions import (
    AgreementNotFoundError,
    AuthorizationError,
    InvalidStateTransitionError,
    MarketplaceError,
    ValidationError,
)
from milestone_escrow.domain.fees import platform_fee
from milestone_escrow.domain.parties import Actor, resolve_party
from milestone_escrow.domain.protocols import (
    ChainReceipt,
    VerificationRequest,
    VerificationResult,
)
from milestone_escrow.domain.state_machine import (
    AgreementStateMachine,
    MilestoneStateMachine,
    TransactionStateMachine,
    validate_transition,
)

__all__ = [
    "AgreementStatus",
    "EventType",
    "MilestoneStatus",
    "Party",
    "TransactionStatus",
    "TransactionType",
    "AgreementNotFoundError",
    "AuthorizationError",
    "InvalidStateTransitionError",
    "MarketplaceError",
    "ValidationError",
    "platform_fee",
    "Actor",
    "resolve_party",
    "ChainReceipt",
    "VerificationRequest",
    "VerificationResult",
    "AgreementStateMachine",
    "MilestoneStateMachine",
    "TransactionStateMachine",
    "validate_transition",
]
