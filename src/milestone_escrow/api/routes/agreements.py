"""Agreement REST API routes.

Routes:
    POST   /api/v1/agreements                          - Create a draft agreement
    GET    /api/v1/agreements                          - List the caller's agreements
    GET    /api/v1/agreements/statistics               - Counts per status and role
    GET    /api/v1/agreements/{id}                     - Agreement with milestones
    PUT    /api/v1/agreements/{id}                     - Edit a draft
    GET    /api/v1/agreements/{id}/events              - Audit trail
    POST   /api/v1/agreements/{id}/submit              - Client submits to developer
    POST   /api/v1/agreements/{id}/developer-accept    - Developer prices and accepts
    POST   /api/v1/agreements/{id}/respond             - Developer accepts or declines
    POST   /api/v1/agreements/{id}/sign                - Record a party's signature
    POST   /api/v1/agreements/{id}/client-approve      - Client funds escrow
    POST   /api/v1/agreements/{id}/complete            - Close and pay out
    POST   /api/v1/agreements/{id}/cancel              - Cancel
    POST   /api/v1/agreements/{id}/dispute             - Raise a dispute
    POST   /api/v1/agreements/{id}/resolve-dispute     - Resolve a dispute
    POST   /api/v1/agreements/{id}/modifications       - Request a change
    PUT    /api/v1/agreements/{id}/modifications/{mid} - Answer a change request
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from milestone_escrow.api.deps import (
    get_actor,
    get_agreement_service,
    get_milestone_service,
    get_modification_service,
    idempotency_guard,
)
from milestone_escrow.domain.enums import AgreementStatus
from milestone_escrow.domain.parties import Actor
from milestone_escrow.domain.state_machine import AgreementStateMachine
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.agreement import (
    AgreementDetailResponse,
    AgreementEventResponse,
    AgreementResponse,
    ClientApproveRequest,
    CreateAgreementRequest,
    DeveloperAcceptRequest,
    ModificationAnswerRequest,
    ModificationAnswerResponse,
    ModificationCreateRequest,
    ModificationResponse,
    ResolveDisputeRequest,
    RespondRequest,
    SignRequest,
    UpdateAgreementRequest,
)
from milestone_escrow.schemas.common import ApiResponse, Pagination, ReasonRequest, ok
from milestone_escrow.schemas.milestone import MilestoneResponse
from milestone_escrow.services import AgreementService, MilestoneService, ModificationService

router = APIRouter(prefix="/api/v1/agreements", tags=["Agreements"])
logger = get_logger(__name__)


def _milestone_specs(body: DeveloperAcceptRequest | CreateAgreementRequest) -> list[dict] | None:
    if body.milestones is None:
        return None
    return [m.model_dump() for m in body.milestones]


def _agreement(agreement) -> AgreementResponse:  # noqa: ANN001
    return AgreementResponse.model_validate(agreement)


# ---------------------------------------------------------------------------
# Create & read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ApiResponse[AgreementResponse],
    status_code=201,
    summary="Create a draft agreement",
)
async def create_agreement(
    body: CreateAgreementRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.create_agreement(
        actor,
        developer_wallet=body.developer_wallet,
        developer_id=body.developer_id,
        title=body.title,
        description=body.description,
        requirements=body.requirements,
        deliverables=body.deliverables,
        terms=body.terms,
        total_value=body.total_value,
        currency=body.currency.value,
        start_date=body.start_date,
        expected_end_date=body.expected_end_date,
        milestones=_milestone_specs(body),
    )
    return ok(_agreement(agreement), "Agreement created")


@router.get(
    "",
    response_model=ApiResponse[list[AgreementResponse]],
    summary="List the caller's agreements",
)
async def list_agreements(
    status: AgreementStatus | None = Query(default=None),
    role: str | None = Query(default=None, pattern="^(client|developer)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    items, total = await svc.list_agreements(
        actor, status=status.value if status else None, role=role, page=page, limit=limit
    )
    return ok(
        [_agreement(a) for a in items],
        "Agreements retrieved",
        pagination=Pagination.build(page, limit, total),
    )


@router.get(
    "/statistics",
    response_model=ApiResponse[dict],
    summary="Agreement counts for the caller",
)
async def agreement_statistics(
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    return ok(await svc.get_statistics(actor), "Statistics retrieved")


@router.get(
    "/{agreement_id}",
    response_model=ApiResponse[AgreementDetailResponse],
    summary="Get an agreement with its milestones",
)
async def get_agreement(
    agreement_id: str,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
    milestones: MilestoneService = Depends(get_milestone_service),
    modifications: ModificationService = Depends(get_modification_service),
) -> dict:
    agreement = await svc.get_agreement(actor, agreement_id)
    detail = AgreementDetailResponse.model_validate(agreement).model_copy(
        update={
            "milestones": [
                MilestoneResponse.model_validate(m)
                for m in await milestones.list_for_agreement(actor, agreement_id)
            ],
            "modifications": [
                ModificationResponse.model_validate(m)
                for m in await modifications.list_for_agreement(agreement)
            ],
            "allowed_events": AgreementStateMachine(
                current_status=agreement.status
            ).get_allowed_events(),
        }
    )
    return ok(detail, "Agreement retrieved")


@router.put(
    "/{agreement_id}",
    response_model=ApiResponse[AgreementResponse],
    summary="Edit a draft agreement",
)
async def update_agreement(
    agreement_id: str,
    body: UpdateAgreementRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.update_agreement(
        actor, agreement_id, **body.model_dump(exclude_unset=True)
    )
    return ok(_agreement(agreement), "Agreement updated")


@router.get(
    "/{agreement_id}/events",
    response_model=ApiResponse[list[AgreementEventResponse]],
    summary="Get the audit trail of an agreement",
)
async def agreement_events(
    agreement_id: str,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    events = await svc.get_events(actor, agreement_id)
    return ok([AgreementEventResponse.model_validate(e) for e in events], "Events retrieved")


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


@router.post(
    "/{agreement_id}/submit",
    response_model=ApiResponse[AgreementResponse],
    summary="Submit a draft to the developer",
)
async def submit_agreement(
    agreement_id: str,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.submit_to_developer(actor, agreement_id)
    return ok(_agreement(agreement), "Agreement submitted to developer")


@router.post(
    "/{agreement_id}/developer-accept",
    response_model=ApiResponse[AgreementResponse],
    summary="Developer accepts with milestone pricing",
)
async def developer_accept(
    agreement_id: str,
    body: DeveloperAcceptRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.developer_accept(
        actor,
        agreement_id,
        milestones=_milestone_specs(body),
        total_value=body.total_value,
        currency=body.currency.value if body.currency else None,
    )
    return ok(_agreement(agreement), "Agreement accepted by developer")


@router.post(
    "/{agreement_id}/respond",
    response_model=ApiResponse[AgreementResponse],
    summary="Developer accepts or declines a submitted agreement",
)
async def respond_to_agreement(
    agreement_id: str,
    body: RespondRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.respond(
        actor,
        agreement_id,
        accept=body.accept,
        reason=body.reason,
        milestones=_milestone_specs(body),
        total_value=body.total_value,
        currency=body.currency.value if body.currency else None,
    )
    return ok(
        _agreement(agreement),
        "Agreement accepted by developer" if body.accept else "Agreement declined",
    )


@router.post(
    "/{agreement_id}/sign",
    response_model=ApiResponse[AgreementResponse],
    summary="Sign the agreement",
)
async def sign_agreement(
    agreement_id: str,
    body: SignRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.sign(
        actor,
        agreement_id,
        wallet_address=body.wallet_address,
        message=body.message,
        signature_hash=body.signature_hash,
    )
    return ok(_agreement(agreement), "Signature recorded")


# ---------------------------------------------------------------------------
# Funding & closing
# ---------------------------------------------------------------------------


@router.post(
    "/{agreement_id}/client-approve",
    response_model=ApiResponse[AgreementResponse],
    summary="Client approves and funds escrow",
)
async def client_approve(
    agreement_id: str,
    body: ClientApproveRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
    _idempotency_key: str | None = Depends(idempotency_guard("client-approve")),
) -> dict:
    agreement = await svc.client_approve(
        actor,
        agreement_id,
        tx_hash=body.tx_hash,
        network=body.network.value if body.network else None,
        block_number=body.block_number,
        contract_address=body.contract_address,
        ipfs_hashes=body.ipfs_hashes,
    )
    return ok(_agreement(agreement), "Escrow funded, agreement is active")


@router.post(
    "/{agreement_id}/complete",
    response_model=ApiResponse[AgreementResponse],
    summary="Complete the agreement",
)
async def complete_agreement(
    agreement_id: str,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.complete(actor, agreement_id)
    return ok(_agreement(agreement), "Agreement completed")


@router.post(
    "/{agreement_id}/cancel",
    response_model=ApiResponse[AgreementResponse],
    summary="Cancel the agreement",
)
async def cancel_agreement(
    agreement_id: str,
    body: ReasonRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.cancel(actor, agreement_id, reason=body.reason or "")
    return ok(_agreement(agreement), "Agreement cancelled")


@router.post(
    "/{agreement_id}/dispute",
    response_model=ApiResponse[AgreementResponse],
    summary="Raise a dispute",
)
async def raise_dispute(
    agreement_id: str,
    body: ReasonRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.raise_dispute(actor, agreement_id, reason=body.reason or "")
    return ok(_agreement(agreement), "Dispute raised")


@router.post(
    "/{agreement_id}/resolve-dispute",
    response_model=ApiResponse[AgreementResponse],
    summary="Resolve a dispute",
)
async def resolve_dispute(
    agreement_id: str,
    body: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    svc: AgreementService = Depends(get_agreement_service),
) -> dict:
    agreement = await svc.resolve_dispute(actor, agreement_id, resolution=body.resolution)
    return ok(_agreement(agreement), "Dispute resolved")


# ---------------------------------------------------------------------------
# Modifications
# ---------------------------------------------------------------------------


@router.post(
    "/{agreement_id}/modifications",
    response_model=ApiResponse[ModificationResponse],
    status_code=201,
    summary="Request a modification",
)
async def request_modification(
    agreement_id: str,
    body: ModificationCreateRequest,
    actor: Actor = Depends(get_actor),
    svc: ModificationService = Depends(get_modification_service),
) -> dict:
    modification = await svc.request(
        actor,
        agreement_id,
        modification_type=body.modification_type,
        description=body.description,
        new_value=body.new_value,
    )
    return ok(ModificationResponse.model_validate(modification), "Modification requested")


@router.put(
    "/{agreement_id}/modifications/{modification_id}",
    response_model=ApiResponse[ModificationAnswerResponse],
    summary="Approve or reject a modification",
)
async def answer_modification(
    agreement_id: str,
    modification_id: str,
    body: ModificationAnswerRequest,
    actor: Actor = Depends(get_actor),
    svc: ModificationService = Depends(get_modification_service),
) -> dict:
    modification, agreement = await svc.respond(
        actor,
        agreement_id,
        modification_id,
        approve=body.status == "approved",
        note=body.note,
    )
    return ok(
        ModificationAnswerResponse(
            modification=ModificationResponse.model_validate(modification),
            agreement=_agreement(agreement),
        ),
        f"Modification {body.status}",
    )
