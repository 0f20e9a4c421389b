"""Wallet -> user resolution against the users table.

The identity service owns registration; this resolver only looks users up
so agreements created against a bare wallet can be linked later.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.infrastructure.database.repositories import UserRepository

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession


class DatabaseIdentityResolver:
    """IdentityResolver backed by the shared users table."""

    def __init__(self, session: AsyncSession) -> None:
        self._users = UserRepository(session)

    async def resolve(self, wallet_address: str) -> uuid.UUID | None:
        if not wallet_address:
            return None
        user = await self._users.get_by_wallet(wallet_address)
        return user.id if user else None
