"""Platform fee and human-readable identifier helpers.

Pure functions, no I/O. Every call site that needs a platform fee
goes through platform_fee().
"""

from __future__ import annotations

import secrets
import string
import time
from decimal import Decimal

from milestone_escrow.domain.enums import TransactionType

DEFAULT_PLATFORM_FEE_PERCENTAGE = Decimal("2.5")

# Amounts are stored as Numeric(36, 18).
AMOUNT_QUANTUM = Decimal("0.000000000000000001")

FEE_BEARING_TYPES = frozenset(
    {
        TransactionType.ESCROW_DEPOSIT,
        TransactionType.MILESTONE_PAYMENT,
        TransactionType.FINAL_PAYMENT,
    }
)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def platform_fee(
    amount: Decimal,
    transaction_type: TransactionType = TransactionType.ESCROW_DEPOSIT,
    percentage: Decimal = DEFAULT_PLATFORM_FEE_PERCENTAGE,
) -> Decimal:
    """Return the platform fee charged on a movement of `amount`.

    Only deposits and payouts to the developer carry a fee; refunds,
    withdrawals and fee transfers themselves are free.
    """
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")
    if percentage < 0 or percentage > 100:
        raise ValueError(f"percentage must be within [0, 100], got {percentage}")
    if TransactionType(transaction_type) not in FEE_BEARING_TYPES:
        return Decimal("0")
    return quantize_amount(amount * percentage / Decimal(100))


def quantize_amount(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(AMOUNT_QUANTUM)


def amounts_equal(left: Decimal, right: Decimal) -> bool:
    return quantize_amount(left) == quantize_amount(right)


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def generate_agreement_code() -> str:
    """AGR-<epoch ms>-<6 upper-case alphanumerics>."""
    return f"AGR-{int(time.time() * 1000)}-{_random_suffix()}"


def generate_transaction_code(transaction_type: TransactionType) -> str:
    """TXN-<type initials>-<epoch ms>-<6 chars>, e.g. TXN-MP-1718000000000-K3J9QZ."""
    initials = "".join(word[0] for word in str(transaction_type).split("_")).upper()
    return f"TXN-{initials}-{int(time.time() * 1000)}-{_random_suffix()}"
