"""Pydantic API schemas."""

from milestone_escrow.schemas.agreement import (
    AgreementDetailResponse,
    AgreementEventResponse,
    AgreementResponse,
    ClientApproveRequest,
    CreateAgreementRequest,
    DeveloperAcceptRequest,
    ModificationAnswerRequest,
    ModificationCreateRequest,
    ModificationResponse,
    ResolveDisputeRequest,
    RespondRequest,
    SignRequest,
    UpdateAgreementRequest,
)
from milestone_escrow.schemas.common import (
    ApiResponse,
    ErrorResponse,
    HealthResponse,
    Pagination,
    ReasonRequest,
    ok,
)
from milestone_escrow.schemas.milestone import (
    ApproveMilestoneRequest,
    CreateMilestoneRequest,
    MilestoneResponse,
    MilestoneSpec,
    UpdateMilestoneRequest,
)
from milestone_escrow.schemas.transaction import (
    BlockchainData,
    CreateTransactionRequest,
    TransactionResponse,
    UpdateTransactionStatusRequest,
    VerificationResponse,
)

__all__ = [
    "AgreementDetailResponse",
    "AgreementEventResponse",
    "AgreementResponse",
    "ApiResponse",
    "ApproveMilestoneRequest",
    "BlockchainData",
    "ClientApproveRequest",
    "CreateAgreementRequest",
    "CreateMilestoneRequest",
    "CreateTransactionRequest",
    "DeveloperAcceptRequest",
    "ErrorResponse",
    "HealthResponse",
    "MilestoneResponse",
    "MilestoneSpec",
    "ModificationAnswerRequest",
    "ModificationCreateRequest",
    "ModificationResponse",
    "Pagination",
    "ReasonRequest",
    "ResolveDisputeRequest",
    "RespondRequest",
    "SignRequest",
    "TransactionResponse",
    "UpdateAgreementRequest",
    "UpdateMilestoneRequest",
    "VerificationResponse",
    "ok",
]
