"""Escrow Ledger - the recorded holding of an agreement's funds.

Tracks total, held, released and remaining amounts plus the platform fee.
release_payment() is the only way money leaves escrow; it is a single
conditional UPDATE, so two concurrent releases can never take the same
funds twice.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import EscrowStatus, TransactionType
from milestone_escrow.domain.exceptions import InsufficientEscrowError, ValidationError
from milestone_escrow.domain.fees import platform_fee, quantize_amount
from milestone_escrow.infrastructure.database.repositories import AgreementRepository
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.infrastructure.database.orm_models import Agreement

logger = get_logger(__name__)


class EscrowLedger:
    """Financial bookkeeping on an agreement row."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._agreement_repo = AgreementRepository(session)

    @staticmethod
    def apply_total(agreement: Agreement, total_value: Decimal) -> None:
        """Set a new contract total and recompute remaining and fee (in memory)."""
        total_value = quantize_amount(total_value)
        released = agreement.released_amount or Decimal("0")
        if total_value < released:
            raise ValidationError(
                f"Total value {total_value} cannot be lower than the amount already "
                f"released ({released})",
                errors=[{"field": "total_value", "message": "below released amount"}],
            )
        agreement.total_value = total_value
        agreement.remaining_amount = total_value - released
        if agreement.escrow_status and agreement.escrow_status != EscrowStatus.PENDING:
            agreement.escrow_held_amount = agreement.remaining_amount
        agreement.platform_fee_amount = platform_fee(
            total_value,
            TransactionType.ESCROW_DEPOSIT,
            agreement.platform_fee_percentage,
        )

    async def lock(self, agreement: Agreement) -> Agreement:
        """Record that the full contract value is now held in escrow."""
        if not agreement.platform_fee_amount:
            agreement.platform_fee_amount = platform_fee(
                agreement.total_value,
                TransactionType.ESCROW_DEPOSIT,
                agreement.platform_fee_percentage,
            )
        agreement.escrow_held_amount = agreement.total_value - agreement.released_amount
        agreement.escrow_status = EscrowStatus.LOCKED.value
        await self._agreement_repo.save(agreement)
        logger.info(
            "escrow.locked",
            agreement_code=agreement.agreement_code,
            held=str(agreement.escrow_held_amount),
            fee=str(agreement.platform_fee_amount),
        )
        return agreement

    async def release_payment(self, agreement: Agreement, amount: Decimal) -> Agreement:
        """Move `amount` from remaining to released.

        Raises:
            ValidationError: If the amount is not positive.
            InsufficientEscrowError: If less than `amount` remains.
        """
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValidationError(f"Release amount must be positive, got {amount}")

        released = await self._agreement_repo.release_funds(agreement, amount)
        if not released:
            await self._session.refresh(agreement)
            raise InsufficientEscrowError(str(amount), str(agreement.remaining_amount))

        logger.info(
            "escrow.released",
            agreement_code=agreement.agreement_code,
            amount=str(amount),
            released=str(agreement.released_amount),
            remaining=str(agreement.remaining_amount),
            escrow_status=agreement.escrow_status,
        )
        return agreement

    @staticmethod
    def snapshot(agreement: Agreement) -> dict:
        """Financial summary suitable for audit metadata and modification diffs."""
        return {
            "total_value": str(agreement.total_value),
            "currency": agreement.currency,
            "released_amount": str(agreement.released_amount),
            "remaining_amount": str(agreement.remaining_amount),
            "platform_fee_percentage": str(agreement.platform_fee_percentage),
            "platform_fee_amount": str(agreement.platform_fee_amount),
            "escrow_status": agreement.escrow_status,
            "escrow_held_amount": str(agreement.escrow_held_amount),
        }
