"""Milestone REST API routes.

Routes:
    POST   /api/v1/milestones                           - Add a milestone to a draft
    GET    /api/v1/milestones/overdue                   - Caller's overdue milestones
    GET    /api/v1/milestones/statistics                - Counts per status
    GET    /api/v1/milestones/agreement/{agreement_id}  - Milestones of an agreement
    GET    /api/v1/milestones/{id}                      - Milestone details
    PUT    /api/v1/milestones/{id}                      - Edit an open milestone
    DELETE /api/v1/milestones/{id}                      - Remove a pending milestone
    POST   /api/v1/milestones/{id}/start                - Developer starts work
    POST   /api/v1/milestones/{id}/complete             - Developer marks work done
    POST   /api/v1/milestones/{id}/submit               - Developer submits (multipart)
    POST   /api/v1/milestones/{id}/review               - Client begins review
    POST   /api/v1/milestones/{id}/approve              - Client approves and pays
    POST   /api/v1/milestones/{id}/request-revision     - Client asks for changes
    POST   /api/v1/milestones/{id}/reject               - Client rejects
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile

from milestone_escrow.api.deps import get_actor, get_app_settings, get_milestone_service
from milestone_escrow.config import Settings
from milestone_escrow.domain.exceptions import ValidationError
from milestone_escrow.domain.parties import Actor
from milestone_escrow.domain.protocols import UploadedFile
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.common import ApiResponse, ReasonRequest, ok
from milestone_escrow.schemas.milestone import (
    ApproveMilestoneRequest,
    CreateMilestoneRequest,
    MilestoneResponse,
    UpdateMilestoneRequest,
)
from milestone_escrow.services import MilestoneService

router = APIRouter(prefix="/api/v1/milestones", tags=["Milestones"])
logger = get_logger(__name__)


def _milestone(milestone) -> MilestoneResponse:  # noqa: ANN001
    return MilestoneResponse.model_validate(milestone)


# ---------------------------------------------------------------------------
# Definition & read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ApiResponse[MilestoneResponse],
    status_code=201,
    summary="Add a milestone to a draft agreement",
)
async def create_milestone(
    body: CreateMilestoneRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestone = await svc.create_milestone(
        actor,
        body.agreement_id,
        title=body.title,
        value=body.value,
        description=body.description,
        deliverables=body.deliverables,
        start_date=body.start_date,
        due_date=body.due_date,
    )
    return ok(_milestone(milestone), "Milestone created")


@router.get(
    "/overdue",
    response_model=ApiResponse[list[MilestoneResponse]],
    summary="Overdue milestones across the caller's agreements",
)
async def overdue_milestones(
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    return ok([_milestone(m) for m in await svc.get_overdue(actor)], "Overdue milestones")


@router.get(
    "/statistics",
    response_model=ApiResponse[dict],
    summary="Milestone counts for the caller",
)
async def milestone_statistics(
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    return ok(await svc.get_statistics(actor), "Statistics retrieved")


@router.get(
    "/agreement/{agreement_id}",
    response_model=ApiResponse[list[MilestoneResponse]],
    summary="Milestones of an agreement",
)
async def agreement_milestones(
    agreement_id: str,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestones = await svc.list_for_agreement(actor, agreement_id)
    return ok([_milestone(m) for m in milestones], "Milestones retrieved")


@router.get(
    "/{milestone_id}",
    response_model=ApiResponse[MilestoneResponse],
    summary="Get a milestone",
)
async def get_milestone(
    milestone_id: str,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    return ok(_milestone(await svc.get_milestone(actor, milestone_id)), "Milestone retrieved")


@router.put(
    "/{milestone_id}",
    response_model=ApiResponse[MilestoneResponse],
    summary="Edit an open milestone",
)
async def update_milestone(
    milestone_id: str,
    body: UpdateMilestoneRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestone = await svc.update_milestone(
        actor, milestone_id, **body.model_dump(exclude_unset=True)
    )
    return ok(_milestone(milestone), "Milestone updated")


@router.delete(
    "/{milestone_id}",
    response_model=ApiResponse[MilestoneResponse],
    summary="Remove a pending milestone",
)
async def delete_milestone(
    milestone_id: str,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestone = await svc.delete_milestone(actor, milestone_id)
    return ok(_milestone(milestone), "Milestone removed")


# ---------------------------------------------------------------------------
# Developer actions
# ---------------------------------------------------------------------------


@router.post(
    "/{milestone_id}/start",
    response_model=ApiResponse[MilestoneResponse],
    summary="Start work on a milestone",
)
async def start_milestone(
    milestone_id: str,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    return ok(_milestone(await svc.start(actor, milestone_id)), "Milestone started")


@router.post(
    "/{milestone_id}/complete",
    response_model=ApiResponse[MilestoneResponse],
    summary="Mark a milestone's work as done",
)
async def complete_milestone(
    milestone_id: str,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    return ok(_milestone(await svc.mark_complete(actor, milestone_id)), "Milestone completed")


@router.post(
    "/{milestone_id}/submit",
    response_model=ApiResponse[MilestoneResponse],
    summary="Submit a milestone for review with evidence files",
)
async def submit_milestone(
    milestone_id: str,
    notes: str | None = Form(default=None),
    files: list[UploadFile] = File(default=[]),
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    uploads = []
    for upload in files:
        content = await upload.read()
        if len(content) > settings.max_upload_bytes:
            raise ValidationError(
                f"File {upload.filename} exceeds the {settings.max_upload_bytes} byte limit",
                errors=[{"field": "files", "message": "file too large"}],
            )
        uploads.append(
            UploadedFile(
                filename=upload.filename or "upload",
                content=content,
                content_type=upload.content_type or "application/octet-stream",
            )
        )
    milestone = await svc.submit(actor, milestone_id, notes=notes, files=uploads)
    return ok(_milestone(milestone), "Milestone submitted")


# ---------------------------------------------------------------------------
# Client actions
# ---------------------------------------------------------------------------


@router.post(
    "/{milestone_id}/review",
    response_model=ApiResponse[MilestoneResponse],
    summary="Begin reviewing a submitted milestone",
)
async def review_milestone(
    milestone_id: str,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    return ok(_milestone(await svc.begin_review(actor, milestone_id)), "Milestone in review")


@router.post(
    "/{milestone_id}/approve",
    response_model=ApiResponse[MilestoneResponse],
    summary="Approve a milestone and release its payment",
)
async def approve_milestone(
    milestone_id: str,
    body: ApproveMilestoneRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestone = await svc.approve(actor, milestone_id, rating=body.rating, feedback=body.feedback)
    return ok(_milestone(milestone), "Milestone approved and payment released")


@router.post(
    "/{milestone_id}/request-revision",
    response_model=ApiResponse[MilestoneResponse],
    summary="Request a revision",
)
async def request_revision(
    milestone_id: str,
    body: ReasonRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestone = await svc.request_revision(actor, milestone_id, reason=body.reason or "")
    return ok(_milestone(milestone), "Revision requested")


@router.post(
    "/{milestone_id}/reject",
    response_model=ApiResponse[MilestoneResponse],
    summary="Reject a milestone",
)
async def reject_milestone(
    milestone_id: str,
    body: ReasonRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> dict:
    milestone = await svc.reject(actor, milestone_id, reason=body.reason or "")
    return ok(_milestone(milestone), "Milestone rejected")
