"""Transaction REST API routes.

Routes:
    POST     /api/v1/transactions                        - Record a transaction
    GET      /api/v1/transactions                        - List the caller's transactions
    GET      /api/v1/transactions/summary                - Sent/received totals
    GET      /api/v1/transactions/statistics             - Totals per type
    GET      /api/v1/transactions/agreement/{id}         - Transactions of an agreement
    GET      /api/v1/transactions/{id}                   - Transaction details
    POST     /api/v1/transactions/{id}/blockchain        - Attach on-chain proof
    PUT|POST /api/v1/transactions/{id}/status            - Advance the status
    GET      /api/v1/transactions/{id}/verify            - Verify on-chain and reconcile
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from milestone_escrow.api.deps import get_actor, get_transaction_service, idempotency_guard
from milestone_escrow.domain.enums import TransactionStatus, TransactionType
from milestone_escrow.domain.parties import Actor
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.common import ApiResponse, Pagination, ok
from milestone_escrow.schemas.transaction import (
    BlockchainData,
    CreateTransactionRequest,
    TransactionResponse,
    UpdateTransactionStatusRequest,
    VerificationResponse,
)
from milestone_escrow.services import TransactionService

router = APIRouter(prefix="/api/v1/transactions", tags=["Transactions"])
logger = get_logger(__name__)


def _transaction(transaction) -> TransactionResponse:  # noqa: ANN001
    return TransactionResponse.model_validate(transaction)


@router.post(
    "",
    response_model=ApiResponse[TransactionResponse],
    status_code=201,
    summary="Record a transaction",
)
async def create_transaction(
    body: CreateTransactionRequest,
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
    _idempotency_key: str | None = Depends(idempotency_guard("transactions")),
) -> dict:
    transaction = await svc.create_transaction(
        actor,
        transaction_type=body.type,
        amount=body.amount,
        to_wallet=body.to_wallet,
        currency=body.currency.value,
        to_user_id=body.to_user_id,
        agreement_id=body.agreement_id,
        milestone_id=body.milestone_id,
        usd_value=body.usd_value,
        network_fee=body.network_fee,
        description=body.description,
        blockchain=body.blockchain.model_dump(mode="json") if body.blockchain else None,
    )
    return ok(_transaction(transaction), "Transaction created")


@router.get(
    "",
    response_model=ApiResponse[list[TransactionResponse]],
    summary="List the caller's transactions",
)
async def list_transactions(
    type: TransactionType | None = Query(default=None),  # noqa: A002
    status: TransactionStatus | None = Query(default=None),
    role: str | None = Query(default=None, pattern="^(sender|receiver)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    items, total = await svc.list_transactions(
        actor,
        type_=type.value if type else None,
        status=status.value if status else None,
        role=role,
        page=page,
        limit=limit,
    )
    return ok(
        [_transaction(t) for t in items],
        "Transactions retrieved",
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/summary", response_model=ApiResponse[dict], summary="Transaction summary")
async def transaction_summary(
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    return ok(await svc.get_summary(actor), "Summary retrieved")


@router.get("/statistics", response_model=ApiResponse[dict], summary="Totals per type")
async def transaction_statistics(
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    return ok(await svc.get_statistics(actor), "Statistics retrieved")


@router.get(
    "/agreement/{agreement_id}",
    response_model=ApiResponse[list[TransactionResponse]],
    summary="Transactions of an agreement",
)
async def agreement_transactions(
    agreement_id: str,
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    items = await svc.list_for_agreement(actor, agreement_id)
    return ok([_transaction(t) for t in items], "Transactions retrieved")


@router.get(
    "/{transaction_id}",
    response_model=ApiResponse[TransactionResponse],
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    return ok(
        _transaction(await svc.get_transaction(actor, transaction_id)), "Transaction retrieved"
    )


@router.post(
    "/{transaction_id}/blockchain",
    response_model=ApiResponse[TransactionResponse],
    summary="Attach on-chain proof and complete the transaction",
)
async def record_blockchain(
    transaction_id: str,
    body: BlockchainData,
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    transaction = await svc.record_blockchain(
        actor, transaction_id, body.model_dump(mode="json")
    )
    return ok(_transaction(transaction), "Blockchain data recorded")


@router.api_route(
    "/{transaction_id}/status",
    methods=["PUT", "POST"],
    response_model=ApiResponse[TransactionResponse],
    summary="Advance a transaction's status",
)
async def update_transaction_status(
    transaction_id: str,
    body: UpdateTransactionStatusRequest,
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    transaction = await svc.update_status(
        actor,
        transaction_id,
        body.status,
        error_code=body.error_code,
        error_message=body.error_message,
        blockchain=body.blockchain.model_dump(mode="json") if body.blockchain else None,
    )
    return ok(_transaction(transaction), f"Transaction {transaction.status}")


@router.get(
    "/{transaction_id}/verify",
    response_model=ApiResponse[VerificationResponse],
    summary="Verify a transaction on-chain",
)
async def verify_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    svc: TransactionService = Depends(get_transaction_service),
) -> dict:
    transaction, result = await svc.verify(actor, transaction_id)
    return ok(
        VerificationResponse(transaction=_transaction(transaction), verification=result.to_dict()),
        "Transaction verified" if result.is_valid else "Transaction could not be verified",
    )
