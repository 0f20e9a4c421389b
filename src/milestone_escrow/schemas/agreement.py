"""Pydantic schemas for the Agreement API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from milestone_escrow.domain.enums import Currency, ModificationType, Network
from milestone_escrow.schemas.common import WALLET_PATTERN
from milestone_escrow.schemas.milestone import MilestoneResponse, MilestoneSpec

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateAgreementRequest(BaseModel):
    """Request body for creating a draft agreement. The caller becomes the client."""

    developer_wallet: str = Field(
        ...,
        pattern=WALLET_PATTERN,
        description="EVM wallet address of the developer (0x-prefixed, 42 chars)",
        examples=["0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18"],
    )
    developer_id: uuid.UUID | None = Field(
        default=None,
        description="Registered user id of the developer, if known",
    )
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=10_000)
    requirements: str | None = Field(default=None, max_length=10_000)
    deliverables: list[str] = Field(default_factory=list)
    terms: dict = Field(
        default_factory=dict,
        description="payment_terms, cancellation_policy, revision_policy, communication",
    )
    total_value: Decimal = Field(..., gt=0, examples=[1000])
    currency: Currency = Currency.ETH
    start_date: datetime | None = None
    expected_end_date: datetime | None = None
    milestones: list[MilestoneSpec] | None = Field(
        default=None,
        description="Optional milestone plan; values must add up to total_value",
    )


class UpdateAgreementRequest(BaseModel):
    """Request body for editing a draft agreement."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1, max_length=10_000)
    requirements: str | None = Field(default=None, max_length=10_000)
    deliverables: list[str] | None = None
    terms: dict | None = None
    total_value: Decimal | None = Field(default=None, gt=0)
    start_date: datetime | None = None
    expected_end_date: datetime | None = None


class DeveloperAcceptRequest(BaseModel):
    """Developer's pricing: the milestone plan, total and currency."""

    milestones: list[MilestoneSpec] | None = None
    total_value: Decimal | None = Field(default=None, gt=0)
    currency: Currency | None = None


class RespondRequest(DeveloperAcceptRequest):
    """Developer's answer to a submitted agreement."""

    accept: bool
    reason: str | None = Field(default=None, max_length=2000)


class SignRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    message: str | None = Field(default=None, max_length=5000)
    signature_hash: str | None = Field(default=None, max_length=200)


class ClientApproveRequest(BaseModel):
    """Client's confirmation that the escrow deposit was made on-chain."""

    # Format is checked by the service, after the caller is authorized
    tx_hash: str | None = Field(
        default=None,
        description="Transaction hash of the escrow deposit (0x-prefixed), required",
    )
    network: Network | None = None
    block_number: int | None = Field(default=None, ge=0)
    contract_address: str | None = Field(default=None, pattern=WALLET_PATTERN)
    ipfs_hashes: list[str] = Field(default_factory=list)


class ResolveDisputeRequest(BaseModel):
    resolution: str | None = Field(default=None, max_length=2000)


class ModificationCreateRequest(BaseModel):
    modification_type: ModificationType
    description: str = Field(..., min_length=1, max_length=5000)
    new_value: dict | None = Field(
        default=None,
        description=(
            "Proposed values. payment_change: total_value, currency, platform_fee_percentage; "
            "timeline_change: expected_end_date; scope_change: title, description, "
            "requirements, deliverables"
        ),
    )


class ModificationAnswerRequest(BaseModel):
    status: Literal["approved", "rejected"]
    note: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class AgreementResponse(BaseModel):
    """Response schema for an agreement."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    agreement_code: str
    client_id: uuid.UUID | None
    client_wallet: str
    developer_id: uuid.UUID | None
    developer_wallet: str
    title: str
    description: str
    requirements: str | None
    deliverables: list
    terms: dict
    start_date: datetime | None
    expected_end_date: datetime | None
    actual_end_date: datetime | None

    total_value: Decimal
    currency: str
    released_amount: Decimal
    remaining_amount: Decimal
    platform_fee_percentage: Decimal
    platform_fee_amount: Decimal
    escrow_status: str
    escrow_held_amount: Decimal

    status: str
    milestones_total: int
    milestones_completed: int
    milestones_approved: int
    milestones_pending: int

    client_signed: bool
    client_signed_at: datetime | None
    developer_signed: bool
    developer_signed_at: datetime | None

    blockchain_tx_hash: str | None
    blockchain_block_number: int | None
    blockchain_network: str | None
    blockchain_contract_address: str | None
    blockchain_ipfs_hashes: list
    blockchain_recorded_at: datetime | None

    cancellation_reason: str | None
    cancelled_by: str | None
    dispute_reason: str | None
    created_at: datetime
    updated_at: datetime


class ModificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    agreement_id: uuid.UUID
    requested_by_party: str
    requested_by: str
    modification_type: str
    description: str
    previous_value: dict | None
    new_value: dict | None
    status: str
    responded_by: str | None
    response_note: str | None
    requested_at: datetime
    responded_at: datetime | None


class AgreementDetailResponse(AgreementResponse):
    """An agreement with its milestones, modifications and allowed next events."""

    milestones: list[MilestoneResponse] = Field(default_factory=list)
    modifications: list[ModificationResponse] = Field(default_factory=list)
    allowed_events: list[str] = Field(
        default_factory=list,
        description="State machine events that can fire from the current status",
    )


class AgreementEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    agreement_id: uuid.UUID
    milestone_id: uuid.UUID | None
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ModificationAnswerResponse(BaseModel):
    modification: ModificationResponse
    agreement: AgreementResponse
