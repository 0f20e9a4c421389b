"""Application services - use case orchestration."""

from milestone_escrow.services.agreement_service import AgreementService
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.milestone_service import MilestoneService
from milestone_escrow.services.modification_service import ModificationService
from milestone_escrow.services.transaction_service import TransactionService

__all__ = [
    "AgreementService",
    "EscrowLedger",
    "MilestoneService",
    "ModificationService",
    "TransactionService",
]
