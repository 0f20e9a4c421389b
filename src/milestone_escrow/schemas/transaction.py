"""Pydantic schemas for the Transaction API."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from milestone_escrow.domain.enums import Currency, Network, TransactionStatus, TransactionType
from milestone_escrow.schemas.common import TX_HASH_PATTERN, WALLET_PATTERN

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class BlockchainData(BaseModel):
    """On-chain proof attached to a transaction."""

    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN)
    network: Network | None = None
    block_number: int | None = Field(default=None, ge=0)
    block_hash: str | None = Field(default=None, pattern=TX_HASH_PATTERN)
    gas_used: int | None = Field(default=None, ge=0)
    gas_price: int | None = Field(default=None, ge=0, description="Wei")
    confirmations: int = Field(default=0, ge=0)


class CreateTransactionRequest(BaseModel):
    """Request body for recording a transaction. The caller is the sender."""

    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    currency: Currency = Currency.ETH
    to_wallet: str = Field(..., pattern=WALLET_PATTERN)
    to_user_id: uuid.UUID | None = None
    agreement_id: str | None = Field(default=None, description="Agreement UUID or AGR- code")
    milestone_id: str | None = None
    usd_value: Decimal | None = Field(default=None, ge=0)
    network_fee: Decimal = Field(default=Decimal("0"), ge=0)
    description: str | None = Field(default=None, max_length=2000)
    blockchain: BlockchainData | None = None


class UpdateTransactionStatusRequest(BaseModel):
    status: TransactionStatus
    error_code: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None, max_length=2000)
    blockchain: BlockchainData | None = Field(
        default=None, description="Proof of a broadcast transfer, usually with 'processing'"
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    """Response schema for a ledger transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_code: str
    type: str
    agreement_id: uuid.UUID | None
    milestone_id: uuid.UUID | None
    from_user_id: uuid.UUID | None
    from_wallet: str
    to_user_id: uuid.UUID | None
    to_wallet: str
    amount: Decimal
    currency: str
    usd_value: Decimal | None
    platform_fee: Decimal
    network_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal
    status: str
    is_on_chain: bool
    network: str | None
    tx_hash: str | None
    block_number: int | None
    block_hash: str | None
    gas_used: int | None
    gas_price: str | None
    confirmations: int
    description: str | None
    initiated_by: str | None
    error_code: str | None
    error_message: str | None
    initiated_at: datetime
    processed_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime


class VerificationResponse(BaseModel):
    transaction: TransactionResponse
    verification: dict
