"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the authenticated caller, services, outbound clients and configuration.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Depends, Header

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.domain.exceptions import AuthenticationError, DuplicateOperationError
from milestone_escrow.domain.parties import Actor
from milestone_escrow.infrastructure.database.engine import get_async_session
from milestone_escrow.infrastructure.database.repositories import parse_uuid
from milestone_escrow.infrastructure.identity import DatabaseIdentityResolver
from milestone_escrow.infrastructure.redis_client import (
    claim_idempotency,
    is_redis_ready,
    release_idempotency,
)
from milestone_escrow.infrastructure.storage import PinataUploader
from milestone_escrow.logging_config import bind_actor, get_logger
from milestone_escrow.services import (
    AgreementService,
    MilestoneService,
    ModificationService,
    TransactionService,
)
from milestone_escrow.verifiers.blockchain import BlockchainVerifier, JsonRpcClient

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.protocols import (
        IdentityResolver,
        StorageUploader,
        TransactionVerifier,
    )

logger = get_logger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


async def get_actor(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_wallet_address: str | None = Header(default=None, alias="X-Wallet-Address"),
) -> Actor:
    """Build the caller from the headers set by the upstream auth gateway."""
    if not x_user_id and not x_wallet_address:
        raise AuthenticationError()

    user_id = None
    if x_user_id:
        user_id = parse_uuid(x_user_id)
        if user_id is None:
            raise AuthenticationError("Invalid X-User-Id header")

    actor = Actor(
        user_id=user_id,
        wallet_address=x_wallet_address.lower() if x_wallet_address else None,
    )
    bind_actor(actor)
    return actor


# ---------------------------------------------------------------------------
# Outbound clients (one per process)
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_rpc_client() -> JsonRpcClient:
    return JsonRpcClient.from_settings(get_settings())


def get_transaction_verifier(
    settings: Settings = Depends(get_app_settings),
) -> TransactionVerifier:
    return BlockchainVerifier.from_settings(settings, rpc_client=get_rpc_client())


@lru_cache(maxsize=1)
def get_storage_uploader() -> StorageUploader:
    return PinataUploader.from_settings(get_settings())


async def close_clients() -> None:
    """Close the shared HTTP clients. Called during app shutdown."""
    if get_rpc_client.cache_info().currsize:
        await get_rpc_client().aclose()
        get_rpc_client.cache_clear()
    if get_storage_uploader.cache_info().currsize:
        await get_storage_uploader().aclose()
        get_storage_uploader.cache_clear()


def get_identity_resolver(
    session: AsyncSession = Depends(get_db_session),
) -> IdentityResolver:
    return DatabaseIdentityResolver(session)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_agreement_service(
    session: AsyncSession = Depends(get_db_session),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    settings: Settings = Depends(get_app_settings),
) -> AgreementService:
    return AgreementService(
        session,
        identity_resolver=resolver,
        default_network=settings.default_network,
        fee_percentage=settings.platform_fee_percentage,
    )


def get_modification_service(
    session: AsyncSession = Depends(get_db_session),
) -> ModificationService:
    return ModificationService(session)


def get_milestone_service(
    session: AsyncSession = Depends(get_db_session),
    uploader: StorageUploader = Depends(get_storage_uploader),
    settings: Settings = Depends(get_app_settings),
) -> MilestoneService:
    return MilestoneService(
        session, uploader=uploader, max_upload_files=settings.max_upload_files
    )


def get_transaction_service(
    session: AsyncSession = Depends(get_db_session),
    verifier: TransactionVerifier = Depends(get_transaction_verifier),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    settings: Settings = Depends(get_app_settings),
) -> TransactionService:
    return TransactionService(
        session,
        verifier=verifier,
        identity_resolver=resolver,
        default_network=settings.default_network,
        fee_percentage=settings.platform_fee_percentage,
    )


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


def idempotency_guard(scope: str):  # noqa: ANN201
    """Build a dependency that rejects a repeated Idempotency-Key within `scope`.

    The key is released again if the request fails, so the client can retry.
    """

    async def _guard(
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ) -> AsyncGenerator[str | None, None]:
        if not idempotency_key:
            yield None
            return
        if not is_redis_ready():
            logger.warning("idempotency.redis_unavailable", scope=scope)
            yield idempotency_key
            return
        if not await claim_idempotency(scope, idempotency_key):
            logger.warning("idempotency.duplicate", scope=scope, key=idempotency_key)
            raise DuplicateOperationError(idempotency_key)
        try:
            yield idempotency_key
        except Exception:
            await release_idempotency(scope, idempotency_key)
            raise

    return _guard
