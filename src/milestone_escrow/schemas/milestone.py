"""Pydantic schemas for the Milestone API."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field


class MilestoneSpec(BaseModel):
    """One entry of a milestone plan (agreement creation, developer pricing)."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=10_000)
    deliverables: list[str] = Field(default_factory=list)
    value: Decimal = Field(..., ge=0)
    start_date: datetime | None = None
    due_date: datetime | None = None


class CreateMilestoneRequest(MilestoneSpec):
    agreement_id: str = Field(..., description="Agreement UUID or AGR- code")


class UpdateMilestoneRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=10_000)
    deliverables: list[str] | None = None
    due_date: datetime | None = None


class ApproveMilestoneRequest(BaseModel):
    # Range is checked by the service after the caller's role and the status.
    rating: int | None = None
    feedback: str | None = Field(default=None, max_length=5000)


class MilestoneResponse(BaseModel):
    """Response schema for a milestone."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    agreement_id: uuid.UUID
    milestone_number: int
    title: str
    description: str | None
    deliverables: list
    value: Decimal
    currency: str
    is_paid: bool
    paid_at: datetime | None
    payment_transaction_id: uuid.UUID | None
    start_date: datetime | None
    due_date: datetime | None
    completed_date: datetime | None
    approved_date: datetime | None
    status: str
    submission: dict | None
    review_rating: int | None
    review_feedback: str | None
    reviewed_by: str | None
    reviewed_at: datetime | None
    revisions: list
    is_overdue: bool
    days_remaining: int | None
    revision_count: int
    created_at: datetime
    updated_at: datetime
