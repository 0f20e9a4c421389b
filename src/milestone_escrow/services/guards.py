"""Helpers shared by the application services: transition guards, lookups
and party-id backfill."""

from __future__ import annotations

from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from milestone_escrow.domain.enums import Party
from milestone_escrow.domain.exceptions import (
    AgreementNotFoundError,
    InvalidStateTransitionError,
)
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from milestone_escrow.domain.parties import Actor
    from milestone_escrow.domain.protocols import IdentityResolver
    from milestone_escrow.infrastructure.database.orm_models import Agreement
    from milestone_escrow.infrastructure.database.repositories import AgreementRepository

logger = get_logger(__name__)


def fire_transition(machine_cls: type, entity: str, current_status: str, event_name: str) -> str:
    """Validate and fire a state machine transition, returning the new status.

    Raises InvalidStateTransitionError if the transition is illegal.
    """
    sm = machine_cls(current_status=current_status)
    event_method = getattr(sm, event_name, None)
    if event_method is None:
        raise InvalidStateTransitionError(entity, current_status, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(entity, current_status, event_name) from err
    return sm.status


async def get_agreement_or_raise(repo: AgreementRepository, reference: str) -> Agreement:
    agreement = await repo.get_by_reference(str(reference))
    if agreement is None or not agreement.is_active:
        raise AgreementNotFoundError(str(reference))
    return agreement


async def backfill_party_id(
    repo: AgreementRepository,
    agreement: Agreement,
    actor: Actor,
    party: Party,
    resolver: IdentityResolver | None,
) -> None:
    """Link a wallet-only party to a registered user, best-effort.

    Uses the caller's own user id when known, otherwise asks the identity
    resolver. No match leaves the reference unset and never blocks the caller.
    """
    if party == Party.NEITHER:
        return
    column = "client_id" if party == Party.CLIENT else "developer_id"
    if getattr(agreement, column) is not None:
        return

    user_id = actor.user_id
    if user_id is None and resolver is not None and actor.wallet_address:
        user_id = await resolver.resolve(actor.wallet_address)
    if user_id is None:
        logger.debug(
            "agreement.party_unlinked",
            agreement_code=agreement.agreement_code,
            party=party.value,
        )
        return

    if await repo.set_party_id(agreement, column, user_id):
        logger.info(
            "agreement.party_linked",
            agreement_code=agreement.agreement_code,
            party=party.value,
            user_id=str(user_id),
        )
