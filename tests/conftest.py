"""Shared test fixtures for the Milestone Escrow test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - Seeded client / developer users and their Actors
    - A factory that drives an agreement all the way to a funded, active state
    - An httpx client wired to the FastAPI app with test doubles for the
      database session, file storage and blockchain verifier
"""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from milestone_escrow.api.deps import (
    get_db_session,
    get_storage_uploader,
    get_transaction_verifier,
)
from milestone_escrow.domain.parties import Actor
from milestone_escrow.domain.protocols import StoredFile, VerificationResult
from milestone_escrow.infrastructure.database.engine import build_session_factory
from milestone_escrow.infrastructure.database.orm_models import Base, User
from milestone_escrow.infrastructure.identity import DatabaseIdentityResolver
from milestone_escrow.infrastructure.redis_client import set_redis
from milestone_escrow.main import create_app
from milestone_escrow.services import AgreementService

CLIENT_WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f2bd18"
DEVELOPER_WALLET = "0x8ba1f109551bd432803012645ac136ddd64dba72"
OUTSIDER_WALLET = "0x1111111111111111111111111111111111111111"
DEPOSIT_TX_HASH = "0x" + "ab" * 32
PAYMENT_TX_HASH = "0x" + "cd" * 32


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class StubUploader:
    """StorageUploader that keeps files in memory."""

    def __init__(self) -> None:
        self.stored: list = []

    async def store(self, file) -> StoredFile:  # noqa: ANN001
        self.stored.append(file)
        cid = f"bafy{len(self.stored):04d}"
        return StoredFile(
            filename=file.filename,
            url=f"https://gateway.test/ipfs/{cid}",
            ipfs_hash=cid,
            size=len(file.content),
            content_type=file.content_type,
        )


class StubVerifier:
    """TransactionVerifier returning a canned result."""

    def __init__(self, result: VerificationResult | None = None) -> None:
        self.result = result or VerificationResult(is_valid=True, details="ok")
        self.requests: list = []

    async def verify(self, request) -> VerificationResult:  # noqa: ANN001
        self.requests.append(request)
        return self.result


class InMemoryRedis:
    """Just enough of redis.asyncio.Redis for the idempotency helpers."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):  # noqa: ANN201
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():  # noqa: ANN201
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):  # noqa: ANN001, ANN201
    factory = build_session_factory(engine)
    async with factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client_user(session) -> User:  # noqa: ANN001
    user = User(wallet_address=CLIENT_WALLET, display_name="Client", role="client")
    session.add(user)
    await session.flush()
    return user


@pytest_asyncio.fixture
async def developer_user(session) -> User:  # noqa: ANN001
    user = User(wallet_address=DEVELOPER_WALLET, display_name="Developer", role="developer")
    session.add(user)
    await session.flush()
    return user


@pytest.fixture
def client_actor(client_user: User) -> Actor:
    return Actor(user_id=client_user.id, wallet_address=CLIENT_WALLET)


@pytest.fixture
def developer_actor(developer_user: User) -> Actor:
    return Actor(user_id=developer_user.id, wallet_address=DEVELOPER_WALLET)


@pytest.fixture
def outsider_actor() -> Actor:
    return Actor(wallet_address=OUTSIDER_WALLET)


@pytest.fixture
def agreement_service(session) -> AgreementService:  # noqa: ANN001
    return AgreementService(session, identity_resolver=DatabaseIdentityResolver(session))


@pytest.fixture
def create_agreement(agreement_service, client_actor):  # noqa: ANN001, ANN201
    """Factory: a draft agreement with one milestone per value."""

    async def _create(*values: Decimal, title: str = "Marketplace backend"):  # noqa: ANN202
        values = values or (Decimal("1000"),)
        return await agreement_service.create_agreement(
            client_actor,
            developer_wallet=DEVELOPER_WALLET,
            title=title,
            description="Build the escrow backend",
            total_value=sum(values, Decimal("0")),
            milestones=[
                {"title": f"Milestone {number}", "value": value}
                for number, value in enumerate(values, start=1)
            ],
        )

    return _create


@pytest.fixture
def funded_agreement(agreement_service, create_agreement, client_actor, developer_actor):  # noqa: ANN001, ANN201
    """Factory: an agreement negotiated, accepted and funded (status active)."""

    async def _fund(*values: Decimal):  # noqa: ANN202
        agreement = await create_agreement(*values)
        ref = str(agreement.id)
        await agreement_service.submit_to_developer(client_actor, ref)
        await agreement_service.developer_accept(developer_actor, ref)
        await agreement_service.client_approve(client_actor, ref, tx_hash=DEPOSIT_TX_HASH)
        return agreement

    return _fund


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


@pytest.fixture
def uploader() -> StubUploader:
    return StubUploader()


@pytest.fixture
def verifier() -> StubVerifier:
    return StubVerifier()


@pytest_asyncio.fixture
async def api_client(engine, uploader, verifier):  # noqa: ANN001, ANN201
    factory = build_session_factory(engine)

    async def _session():  # noqa: ANN202
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_storage_uploader] = lambda: uploader
    app.dependency_overrides[get_transaction_verifier] = lambda: verifier
    set_redis(None)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    set_redis(None)


@pytest.fixture
def client_headers() -> dict[str, str]:
    return {"X-Wallet-Address": CLIENT_WALLET}


@pytest.fixture
def developer_headers() -> dict[str, str]:
    return {"X-Wallet-Address": DEVELOPER_WALLET}
