"""Caller identity and its role relative to an agreement.

The upstream auth gateway hands us a user id, a wallet address, or both.
resolve_party() turns that into a Party once per request so services
never compare ids and wallets inline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from milestone_escrow.domain.enums import Party
from milestone_escrow.domain.exceptions import AuthorizationError

if TYPE_CHECKING:
    import uuid


@dataclass(frozen=True)
class Actor:
    """The authenticated caller."""

    user_id: uuid.UUID | None = None
    wallet_address: str | None = None

    @property
    def label(self) -> str:
        """Stable string for audit rows: the wallet if known, else the user id."""
        if self.wallet_address:
            return self.wallet_address.lower()
        if self.user_id:
            return str(self.user_id)
        return "SYSTEM"


SYSTEM_ACTOR = Actor()


class AgreementParties(Protocol):
    client_id: uuid.UUID | None
    client_wallet: str
    developer_id: uuid.UUID | None
    developer_wallet: str


def same_wallet(left: str | None, right: str | None) -> bool:
    """Case-insensitive EVM address comparison (checksummed vs lowercase)."""
    if not left or not right:
        return False
    return left.lower() == right.lower()


def resolve_party(agreement: AgreementParties, actor: Actor) -> Party:
    """Return which side of the agreement the actor is on.

    User ids take precedence; wallets are compared case-insensitively
    because a party may be known only by wallet until they register.
    """
    if actor.user_id is not None:
        if agreement.client_id is not None and agreement.client_id == actor.user_id:
            return Party.CLIENT
        if agreement.developer_id is not None and agreement.developer_id == actor.user_id:
            return Party.DEVELOPER
    if same_wallet(agreement.client_wallet, actor.wallet_address):
        return Party.CLIENT
    if same_wallet(agreement.developer_wallet, actor.wallet_address):
        return Party.DEVELOPER
    return Party.NEITHER


def require_party(
    agreement: AgreementParties,
    actor: Actor,
    *allowed: Party,
    action: str = "perform this action",
) -> Party:
    """Resolve the actor's party and raise AuthorizationError unless it is allowed.

    With no `allowed` parties given, either the client or the developer passes.
    """
    party = resolve_party(agreement, actor)
    permitted = allowed or (Party.CLIENT, Party.DEVELOPER)
    if party not in permitted:
        if party == Party.NEITHER:
            raise AuthorizationError("You are not a party to this agreement")
        names = " or ".join(p.value for p in permitted)
        raise AuthorizationError(f"Only the {names} can {action}")
    return party


def counterparty(party: Party) -> Party:
    if party == Party.CLIENT:
        return Party.DEVELOPER
    if party == Party.DEVELOPER:
        return Party.CLIENT
    return Party.NEITHER
