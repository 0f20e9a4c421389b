"""Agreement Service - core business logic for the agreement lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (data access)
    - Escrow ledger and transaction ledger (money)
    - Event log (audit trail)

Lifecycle (pricing handshake):
    draft -> pending_developer -> pending_client
          -> [pending_signatures -> escrow_deposit] -> active
          -> in_progress -> awaiting_final_approval -> completed
with cancel from any non-terminal state and disputes while work runs.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.enums import (
    AgreementStatus,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    Party,
    TransactionType,
)
from milestone_escrow.domain.exceptions import (
    ConflictError,
    ValidationError,
)
from milestone_escrow.domain.fees import (
    DEFAULT_PLATFORM_FEE_PERCENTAGE,
    amounts_equal,
    generate_agreement_code,
    platform_fee,
    quantize_amount,
)
from milestone_escrow.domain.parties import require_party, same_wallet
from milestone_escrow.domain.state_machine import AgreementStateMachine
from milestone_escrow.infrastructure.database.orm_models import Agreement
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    EventRepository,
    MilestoneRepository,
    UserRepository,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.guards import (
    backfill_party_id,
    fire_transition,
    get_agreement_or_raise,
)
from milestone_escrow.services.milestone_service import MilestoneService
from milestone_escrow.services.transaction_service import TransactionService
from milestone_escrow.verifiers.blockchain import is_valid_tx_hash

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.parties import Actor
    from milestone_escrow.domain.protocols import IdentityResolver
    from milestone_escrow.infrastructure.database.orm_models import AgreementEvent

logger = get_logger(__name__)

_UPDATABLE_FIELDS = (
    "title",
    "description",
    "requirements",
    "deliverables",
    "terms",
    "start_date",
    "expected_end_date",
)


class AgreementService:
    """Manages the agreement lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        identity_resolver: IdentityResolver | None = None,
        default_network: str = "sepolia",
        fee_percentage: Decimal = DEFAULT_PLATFORM_FEE_PERCENTAGE,
    ) -> None:
        self._session = session
        self._agreement_repo = AgreementRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._user_repo = UserRepository(session)
        self._event_repo = EventRepository(session)
        self._ledger = EscrowLedger(session)
        self._milestones = MilestoneService(session)
        self._transactions = TransactionService(session, default_network=default_network)
        self._identity_resolver = identity_resolver
        self._default_network = default_network
        self._fee_percentage = fee_percentage

    # ------------------------------------------------------------------
    # Creation & editing
    # ------------------------------------------------------------------

    async def create_agreement(
        self,
        actor: Actor,
        developer_wallet: str,
        title: str,
        description: str,
        total_value: Decimal,
        currency: str = "ETH",
        developer_id: Any = None,
        requirements: str | None = None,
        deliverables: list | None = None,
        terms: dict | None = None,
        start_date: datetime | None = None,
        expected_end_date: datetime | None = None,
        milestones: list[dict] | None = None,
    ) -> Agreement:
        """Create a draft agreement with the caller as client."""
        if not actor.wallet_address:
            raise ValidationError(
                "A wallet address is required to create an agreement",
                errors=[{"field": "X-Wallet-Address", "message": "missing"}],
            )
        if same_wallet(actor.wallet_address, developer_wallet) or (
            developer_id is not None and developer_id == actor.user_id
        ):
            raise ValidationError(
                "Client and developer must be different parties",
                errors=[{"field": "developer_wallet", "message": "same as client"}],
            )

        total_value = quantize_amount(total_value)
        if total_value <= 0:
            raise ValidationError("Total value must be positive")
        if milestones:
            allocated = sum((Decimal(str(m["value"])) for m in milestones), Decimal("0"))
            if not amounts_equal(allocated, total_value):
                raise ValidationError(
                    f"Milestone values ({allocated}) must add up to the total value ({total_value})",
                    errors=[{"field": "milestones", "message": "sum must equal total_value"}],
                )

        client_id = actor.user_id
        if self._identity_resolver is not None:
            if client_id is None:
                client_id = await self._identity_resolver.resolve(actor.wallet_address)
            if developer_id is None:
                developer_id = await self._identity_resolver.resolve(developer_wallet)

        fee_percentage = self._fee_percentage
        agreement = Agreement(
            agreement_code=generate_agreement_code(),
            client_id=client_id,
            client_wallet=actor.wallet_address.lower(),
            developer_id=developer_id,
            developer_wallet=developer_wallet.lower(),
            title=title,
            description=description,
            requirements=requirements,
            deliverables=list(deliverables or []),
            terms=dict(terms or {}),
            start_date=start_date,
            expected_end_date=expected_end_date,
            total_value=total_value,
            currency=currency,
            released_amount=Decimal("0"),
            remaining_amount=total_value,
            platform_fee_percentage=fee_percentage,
            platform_fee_amount=platform_fee(
                total_value, TransactionType.ESCROW_DEPOSIT, fee_percentage
            ),
            escrow_status=EscrowStatus.PENDING.value,
            escrow_held_amount=Decimal("0"),
            status=AgreementStatus.DRAFT.value,
            blockchain_ipfs_hashes=[],
            is_active=True,
        )
        agreement = await self._agreement_repo.add(agreement)

        await self._event_repo.record(
            agreement_id=agreement.id,
            event_type=EventType.AGREEMENT_CREATED,
            old_status=None,
            new_status=AgreementStatus.DRAFT,
            actor=actor.label,
            metadata={"total_value": str(total_value), "currency": currency},
        )
        if milestones:
            await self._milestones.replace_milestones(agreement, milestones, actor)
        if client_id is not None:
            await self._user_repo.increment_stats(client_id, agreements_created=1)

        logger.info(
            "agreement.created",
            agreement_code=agreement.agreement_code,
            total_value=str(total_value),
            currency=currency,
            milestones=len(milestones or []),
        )
        return agreement

    async def update_agreement(self, actor: Actor, agreement_ref: str, **fields: Any) -> Agreement:
        """Edit a draft agreement. Either party."""
        agreement, _ = await self._load(actor, agreement_ref, action="update this agreement")
        if agreement.status != AgreementStatus.DRAFT:
            raise ValidationError(
                f"Only draft agreements can be edited (current status '{agreement.status}')"
            )

        changed = sorted(k for k, v in fields.items() if v is not None)
        for name in _UPDATABLE_FIELDS:
            if fields.get(name) is not None:
                setattr(agreement, name, fields[name])
        if fields.get("total_value") is not None:
            allocated = await self._milestone_repo.sum_values(agreement.id)
            if quantize_amount(fields["total_value"]) < allocated:
                raise ValidationError(
                    f"Total value cannot be lower than the milestone values ({allocated})",
                    errors=[{"field": "total_value", "message": "below milestone sum"}],
                )
            EscrowLedger.apply_total(agreement, fields["total_value"])
        await self._agreement_repo.save(agreement)

        await self._event_repo.record(
            agreement_id=agreement.id,
            event_type=EventType.AGREEMENT_UPDATED,
            old_status=agreement.status,
            new_status=agreement.status,
            actor=actor.label,
            metadata={"fields": changed},
        )
        logger.info("agreement.updated", agreement_code=agreement.agreement_code, fields=changed)
        return agreement

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def submit_to_developer(self, actor: Actor, agreement_ref: str) -> Agreement:
        agreement, _ = await self._load(
            actor, agreement_ref, Party.CLIENT, action="submit this agreement"
        )
        await self._transition(
            agreement, "submit_to_developer", EventType.SUBMITTED_TO_DEVELOPER, actor
        )
        return agreement

    async def developer_accept(
        self,
        actor: Actor,
        agreement_ref: str,
        milestones: list[dict] | None = None,
        total_value: Decimal | None = None,
        currency: str | None = None,
    ) -> Agreement:
        """Developer prices the work: fixes the milestone set, total and currency."""
        agreement, _ = await self._load(
            actor, agreement_ref, Party.DEVELOPER, action="accept this agreement"
        )
        fire_transition(AgreementStateMachine, "agreement", agreement.status, "developer_accept")

        if milestones:
            allocated = sum((Decimal(str(m["value"])) for m in milestones), Decimal("0"))
            if total_value is not None and not amounts_equal(allocated, total_value):
                raise ValidationError(
                    f"Milestone values ({allocated}) must add up to the total value ({total_value})",
                    errors=[{"field": "milestones", "message": "sum must equal total_value"}],
                )
            total_value = allocated if total_value is None else total_value
        elif total_value is not None:
            allocated = await self._milestone_repo.sum_values(agreement.id)
            if quantize_amount(total_value) < allocated:
                raise ValidationError(
                    f"Total value cannot be lower than the milestone values ({allocated})"
                )

        if currency:
            agreement.currency = currency
        if total_value is not None:
            if quantize_amount(total_value) <= 0:
                raise ValidationError("Total value must be positive")
            EscrowLedger.apply_total(agreement, total_value)
        await self._agreement_repo.save(agreement)
        if milestones:
            await self._milestones.replace_milestones(agreement, milestones, actor)

        await self._transition(
            agreement, "developer_accept", EventType.DEVELOPER_ACCEPTED, actor,
            metadata={
                "total_value": str(agreement.total_value),
                "currency": agreement.currency,
                "milestones": len(milestones or []),
            },
        )
        return agreement

    async def respond(
        self,
        actor: Actor,
        agreement_ref: str,
        accept: bool,
        reason: str | None = None,
        milestones: list[dict] | None = None,
        total_value: Decimal | None = None,
        currency: str | None = None,
    ) -> Agreement:
        """Developer's answer to a submitted agreement: accept (with pricing) or decline."""
        if accept:
            return await self.developer_accept(
                actor, agreement_ref, milestones=milestones,
                total_value=total_value, currency=currency,
            )

        agreement, _ = await self._load(
            actor, agreement_ref, Party.DEVELOPER, action="decline this agreement"
        )
        await self._transition(
            agreement, "developer_decline", EventType.DEVELOPER_DECLINED, actor,
            metadata={"reason": reason},
            cancellation_reason=reason,
            cancelled_by=Party.DEVELOPER.value,
        )
        return agreement

    async def sign(
        self,
        actor: Actor,
        agreement_ref: str,
        wallet_address: str,
        message: str | None = None,
        signature_hash: str | None = None,
    ) -> Agreement:
        """Record one party's signature. The second signature opens escrow deposit."""
        agreement, party = await self._load(actor, agreement_ref, action="sign this agreement")
        party_wallet = (
            agreement.client_wallet if party == Party.CLIENT else agreement.developer_wallet
        )
        if not (
            same_wallet(wallet_address, actor.wallet_address)
            and same_wallet(wallet_address, party_wallet)
        ):
            raise ValidationError(
                "Signing wallet must match your wallet on this agreement",
                errors=[{"field": "wallet_address", "message": "does not match caller"}],
            )
        if getattr(agreement, f"{party.value}_signed"):
            raise ValidationError(
                f"The {party.value} has already signed this agreement", code="ALREADY_SIGNED"
            )

        other_signed = (
            agreement.developer_signed if party == Party.CLIENT else agreement.client_signed
        )
        event_name = (
            "signatures_complete"
            if agreement.status == AgreementStatus.PENDING_SIGNATURES and other_signed
            else "collect_signature"
        )
        await self._transition(
            agreement, event_name, EventType.AGREEMENT_SIGNED, actor,
            metadata={"party": party.value, "signature_hash": signature_hash},
            **{
                f"{party.value}_signed": True,
                f"{party.value}_signed_at": datetime.now(UTC),
                f"{party.value}_signature_wallet": wallet_address.lower(),
                f"{party.value}_signature_message": message,
                f"{party.value}_signature_hash": signature_hash,
            },
        )
        return agreement

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def client_approve(
        self,
        actor: Actor,
        agreement_ref: str,
        tx_hash: str | None,
        network: str | None = None,
        block_number: int | None = None,
        contract_address: str | None = None,
        ipfs_hashes: list[str] | None = None,
    ) -> Agreement:
        """Client confirms the on-chain deposit: escrow locks and the agreement goes active."""
        agreement, _ = await self._load(
            actor, agreement_ref, Party.CLIENT, action="approve and fund this agreement"
        )
        fire_transition(AgreementStateMachine, "agreement", agreement.status, "fund_escrow")
        if not tx_hash or not is_valid_tx_hash(tx_hash):
            raise ValidationError(
                "A valid escrow deposit transaction hash is required",
                errors=[{"field": "tx_hash", "message": "must be 0x followed by 64 hex characters"}],
            )
        if agreement.blockchain_tx_hash:
            raise ConflictError(
                f"Blockchain data already recorded for {agreement.agreement_code}",
                code="BLOCKCHAIN_ALREADY_RECORDED",
            )

        network = network or self._default_network
        now = datetime.now(UTC)
        agreement.blockchain_tx_hash = tx_hash
        agreement.blockchain_block_number = block_number
        agreement.blockchain_network = network
        agreement.blockchain_contract_address = contract_address
        agreement.blockchain_ipfs_hashes = list(ipfs_hashes or [])
        agreement.blockchain_recorded_at = now
        await self._ledger.lock(agreement)

        transaction = await self._transactions.record_payment(
            TransactionType.ESCROW_DEPOSIT,
            agreement,
            agreement.total_value,
            initiated_by=actor,
            blockchain={"tx_hash": tx_hash, "network": network, "block_number": block_number},
            description=f"Escrow deposit for {agreement.agreement_code}",
        )
        await self._transition(
            agreement, "fund_escrow", EventType.ESCROW_FUNDED, actor,
            metadata={
                "tx_hash": tx_hash,
                "network": network,
                "amount": str(agreement.total_value),
                "transaction_code": transaction.transaction_code,
            },
            start_date=agreement.start_date or now,
        )
        return agreement

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def complete(self, actor: Actor, agreement_ref: str) -> Agreement:
        """Close the agreement, paying out whatever is still held in escrow."""
        agreement, _ = await self._load(
            actor, agreement_ref, Party.CLIENT, action="complete this agreement"
        )
        fire_transition(AgreementStateMachine, "agreement", agreement.status, "complete")

        milestones = await self._milestone_repo.get_by_agreement(agreement.id)
        open_milestones = [
            m.milestone_number
            for m in milestones
            if m.status not in (MilestoneStatus.APPROVED, MilestoneStatus.PAID)
        ]
        if open_milestones:
            raise ValidationError(
                f"All milestones must be approved before completion "
                f"(open: {', '.join(str(n) for n in open_milestones)})",
                code="MILESTONES_INCOMPLETE",
            )

        final_payment = None
        if agreement.remaining_amount > 0:
            amount = agreement.remaining_amount
            await self._ledger.release_payment(agreement, amount)
            final_payment = await self._transactions.record_payment(
                TransactionType.FINAL_PAYMENT,
                agreement,
                amount,
                initiated_by=actor,
                description=f"Final payment for {agreement.agreement_code}",
            )

        await self._transition(
            agreement, "complete", EventType.AGREEMENT_COMPLETED, actor,
            metadata={
                "released_amount": str(agreement.released_amount),
                "final_payment": final_payment.transaction_code if final_payment else None,
            },
            actual_end_date=datetime.now(UTC),
        )

        released = agreement.released_amount
        if agreement.client_id is not None:
            await self._user_repo.increment_stats(
                agreement.client_id, agreements_completed=1, total_spent=released
            )
        if agreement.developer_id is not None:
            await self._user_repo.increment_stats(
                agreement.developer_id, agreements_completed=1, total_earned=released
            )
        return agreement

    async def cancel(self, actor: Actor, agreement_ref: str, reason: str) -> Agreement:
        agreement, party = await self._load(actor, agreement_ref, action="cancel this agreement")
        if not reason or not reason.strip():
            raise ValidationError(
                "A cancellation reason is required",
                errors=[{"field": "reason", "message": "required"}],
            )
        await self._transition(
            agreement, "cancel", EventType.AGREEMENT_CANCELLED, actor,
            metadata={"reason": reason, "remaining_amount": str(agreement.remaining_amount)},
            cancellation_reason=reason.strip(),
            cancelled_by=party.value,
        )
        return agreement

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(self, actor: Actor, agreement_ref: str, reason: str) -> Agreement:
        agreement, party = await self._load(actor, agreement_ref, action="raise a dispute")
        if not reason or not reason.strip():
            raise ValidationError(
                "A dispute reason is required",
                errors=[{"field": "reason", "message": "required"}],
            )
        await self._transition(
            agreement, "raise_dispute", EventType.DISPUTE_RAISED, actor,
            metadata={"reason": reason, "raised_by": party.value},
            dispute_reason=reason.strip(),
        )
        return agreement

    async def resolve_dispute(
        self, actor: Actor, agreement_ref: str, resolution: str | None = None
    ) -> Agreement:
        agreement, party = await self._load(actor, agreement_ref, action="resolve a dispute")
        await self._transition(
            agreement, "resolve_dispute", EventType.DISPUTE_RESOLVED, actor,
            metadata={"resolution": resolution, "resolved_by": party.value},
        )
        return agreement

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_agreement(self, actor: Actor, agreement_ref: str) -> Agreement:
        agreement, _ = await self._load(actor, agreement_ref, action="view this agreement")
        return agreement

    async def list_agreements(
        self,
        actor: Actor,
        status: str | None = None,
        role: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Agreement], int]:
        return await self._agreement_repo.list_for_actor(
            actor, status=status, role=role, limit=limit, offset=(page - 1) * limit
        )

    async def get_statistics(self, actor: Actor) -> dict:
        by_status = await self._agreement_repo.count_by_status(actor)
        as_client = await self._agreement_repo.count_by_status(actor, role="client")
        as_developer = await self._agreement_repo.count_by_status(actor, role="developer")
        return {
            "total": sum(by_status.values()),
            "active": sum(
                by_status.get(s, 0)
                for s in (
                    AgreementStatus.ACTIVE,
                    AgreementStatus.IN_PROGRESS,
                    AgreementStatus.AWAITING_FINAL_APPROVAL,
                )
            ),
            "completed": by_status.get(AgreementStatus.COMPLETED, 0),
            "as_client": sum(as_client.values()),
            "as_developer": sum(as_developer.values()),
            "by_status": by_status,
        }

    async def get_events(self, actor: Actor, agreement_ref: str) -> list[AgreementEvent]:
        agreement, _ = await self._load(actor, agreement_ref, action="view this agreement")
        return await self._event_repo.get_by_agreement(agreement.id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _load(
        self, actor: Actor, agreement_ref: str, *allowed: Party, action: str
    ) -> tuple[Agreement, Party]:
        agreement = await get_agreement_or_raise(self._agreement_repo, agreement_ref)
        party = require_party(agreement, actor, *allowed, action=action)
        await backfill_party_id(
            self._agreement_repo, agreement, actor, party, self._identity_resolver
        )
        return agreement, party

    async def _transition(
        self,
        agreement: Agreement,
        event_name: str,
        event_type: EventType,
        actor: Actor,
        metadata: dict | None = None,
        **values: Any,
    ) -> None:
        old_status = agreement.status
        new_status = fire_transition(AgreementStateMachine, "agreement", old_status, event_name)
        await self._agreement_repo.transition(agreement, old_status, new_status, **values)
        await self._event_repo.record(
            agreement_id=agreement.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor.label,
            metadata=metadata,
        )
        logger.info(
            f"agreement.{event_name}",
            agreement_code=agreement.agreement_code,
            old_status=old_status,
            new_status=new_status,
            actor=actor.label,
        )
