"""Transaction Ledger - records every financial movement.

Transactions are created by the action that triggers the payment (escrow
deposit, milestone approval, agreement completion) or directly through the
API, which accepts every type except the three those workflows own. Their
status only moves forward; completed, failed, cancelled and refunded
transactions are never reopened.

Completing the milestone_payment recorded on a milestone moves that
milestone from approved to paid.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.enums import (
    EventType,
    MilestoneStatus,
    Party,
    TransactionStatus,
    TransactionType,
)
from milestone_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from milestone_escrow.domain.fees import (
    generate_transaction_code,
    platform_fee,
    quantize_amount,
)
from milestone_escrow.domain.parties import resolve_party, same_wallet
from milestone_escrow.domain.protocols import VerificationRequest
from milestone_escrow.domain.state_machine import (
    TRANSACTION_EVENT_FOR_STATUS,
    MilestoneStateMachine,
    TransactionStateMachine,
)
from milestone_escrow.infrastructure.database.orm_models import Transaction
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    EventRepository,
    MilestoneRepository,
    TransactionRepository,
    UserRepository,
    parse_uuid,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.guards import fire_transition
from milestone_escrow.verifiers.blockchain import is_valid_tx_hash

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.parties import Actor
    from milestone_escrow.domain.protocols import (
        IdentityResolver,
        TransactionVerifier,
        VerificationResult,
    )
    from milestone_escrow.infrastructure.database.orm_models import Agreement, Milestone

logger = get_logger(__name__)

# Created only by the agreement and milestone workflows
WORKFLOW_TRANSACTION_TYPES = frozenset(
    {
        TransactionType.ESCROW_DEPOSIT,
        TransactionType.MILESTONE_PAYMENT,
        TransactionType.FINAL_PAYMENT,
    }
)


class TransactionService:
    """Creates, advances and reconciles ledger transactions."""

    def __init__(
        self,
        session: AsyncSession,
        verifier: TransactionVerifier | None = None,
        identity_resolver: IdentityResolver | None = None,
        default_network: str = "sepolia",
        fee_percentage: Decimal = Decimal("2.5"),
    ) -> None:
        self._session = session
        self._transaction_repo = TransactionRepository(session)
        self._agreement_repo = AgreementRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._user_repo = UserRepository(session)
        self._event_repo = EventRepository(session)
        self._verifier = verifier
        self._identity_resolver = identity_resolver
        self._default_network = default_network
        self._fee_percentage = fee_percentage

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def record_payment(
        self,
        transaction_type: TransactionType,
        agreement: Agreement,
        amount: Decimal,
        initiated_by: Actor,
        milestone: Milestone | None = None,
        blockchain: dict | None = None,
        description: str | None = None,
    ) -> Transaction:
        """Create the ledger entry for a movement from client to developer.

        Used by the agreement and milestone workflows; authorization is the
        caller's responsibility.
        """
        fee = platform_fee(amount, transaction_type, agreement.platform_fee_percentage)
        transaction = Transaction(
            transaction_code=generate_transaction_code(transaction_type),
            type=transaction_type.value,
            agreement_id=agreement.id,
            milestone_id=milestone.id if milestone else None,
            from_user_id=agreement.client_id,
            from_wallet=agreement.client_wallet,
            to_user_id=agreement.developer_id,
            to_wallet=agreement.developer_wallet,
            amount=quantize_amount(amount),
            currency=agreement.currency,
            platform_fee=fee,
            network_fee=Decimal("0"),
            total_fees=fee,
            status=TransactionStatus.PENDING.value,
            description=description,
            initiated_by=initiated_by.label,
        )
        if blockchain:
            self._apply_blockchain(transaction, blockchain)
            transaction.status = TransactionStatus.COMPLETED.value
            transaction.completed_at = datetime.now(UTC)

        transaction = await self._transaction_repo.add(transaction)
        logger.info(
            "transaction.recorded",
            transaction_code=transaction.transaction_code,
            type=transaction.type,
            amount=str(transaction.amount),
            status=transaction.status,
        )
        return transaction

    async def create_transaction(
        self,
        actor: Actor,
        transaction_type: TransactionType,
        amount: Decimal,
        to_wallet: str,
        currency: str = "ETH",
        to_user_id: uuid.UUID | None = None,
        agreement_id: str | None = None,
        milestone_id: str | None = None,
        usd_value: Decimal | None = None,
        network_fee: Decimal = Decimal("0"),
        description: str | None = None,
        blockchain: dict | None = None,
    ) -> Transaction:
        """Create a transaction on behalf of the caller, who becomes the sender."""
        if not actor.wallet_address:
            raise ValidationError(
                "A wallet address is required to send a transaction",
                errors=[{"field": "X-Wallet-Address", "message": "missing"}],
            )

        transaction_type = TransactionType(transaction_type)
        if transaction_type in WORKFLOW_TRANSACTION_TYPES:
            raise ValidationError(
                f"'{transaction_type.value}' transactions are created by the agreement workflow",
                errors=[{"field": "type", "message": "not allowed"}],
            )

        if to_user_id is not None:
            recipient = await self._user_repo.get_by_id(to_user_id)
            if recipient is None:
                raise NotFoundError("User", str(to_user_id))
        elif self._identity_resolver is not None:
            to_user_id = await self._identity_resolver.resolve(to_wallet)

        agreement = None
        if agreement_id:
            agreement = await self._agreement_repo.get_by_reference(agreement_id)
            if agreement is None:
                raise NotFoundError("Agreement", agreement_id)

        milestone = None
        if milestone_id:
            parsed = parse_uuid(milestone_id)
            milestone = await self._milestone_repo.get_by_id(parsed) if parsed else None
            if milestone is None:
                raise NotFoundError("Milestone", milestone_id)
            if agreement is None:
                agreement = await self._agreement_repo.get_by_id(milestone.agreement_id)
            elif milestone.agreement_id != agreement.id:
                raise ValidationError("Milestone does not belong to the given agreement")

        fee_percentage = self._fee_percentage
        if agreement is not None:
            if resolve_party(agreement, actor) == Party.NEITHER:
                raise AuthorizationError("You are not a party to this agreement")
            fee_percentage = agreement.platform_fee_percentage

        fee = platform_fee(amount, transaction_type, fee_percentage)
        network_fee = quantize_amount(network_fee)
        transaction = Transaction(
            transaction_code=generate_transaction_code(transaction_type),
            type=transaction_type.value,
            agreement_id=agreement.id if agreement else None,
            milestone_id=milestone.id if milestone else None,
            from_user_id=actor.user_id,
            from_wallet=actor.wallet_address.lower(),
            to_user_id=to_user_id,
            to_wallet=to_wallet.lower(),
            amount=quantize_amount(amount),
            currency=currency,
            usd_value=usd_value,
            platform_fee=fee,
            network_fee=network_fee,
            total_fees=fee + network_fee,
            status=TransactionStatus.PENDING.value,
            description=description,
            initiated_by=actor.label,
        )
        if blockchain:
            self._apply_blockchain(transaction, blockchain)

        transaction = await self._transaction_repo.add(transaction)
        if blockchain:
            await self._advance(transaction, TransactionStatus.COMPLETED, actor.label)

        logger.info(
            "transaction.created",
            transaction_code=transaction.transaction_code,
            type=transaction.type,
            amount=str(transaction.amount),
            status=transaction.status,
        )
        return transaction

    # ------------------------------------------------------------------
    # Status lifecycle
    # ------------------------------------------------------------------

    async def record_blockchain(
        self, actor: Actor, transaction_ref: str, blockchain: dict
    ) -> Transaction:
        """Attach on-chain proof and mark the transaction completed. Sender only."""
        transaction = await self._get_transaction_or_raise(transaction_ref)
        self._require_sender(transaction, actor)
        if transaction.tx_hash:
            raise ConflictError(
                f"Blockchain data already recorded for {transaction.transaction_code}",
                code="BLOCKCHAIN_ALREADY_RECORDED",
            )

        fire_transition(
            TransactionStateMachine, "transaction", transaction.status, "mark_completed"
        )
        self._apply_blockchain(transaction, blockchain)
        await self._advance(transaction, TransactionStatus.COMPLETED, actor.label)
        logger.info(
            "transaction.blockchain_recorded",
            transaction_code=transaction.transaction_code,
            tx_hash=transaction.tx_hash,
        )
        return transaction

    async def update_status(
        self,
        actor: Actor,
        transaction_ref: str,
        status: TransactionStatus,
        error_code: str | None = None,
        error_message: str | None = None,
        blockchain: dict | None = None,
    ) -> Transaction:
        """Advance a transaction to `status` on the sender's request.

        A broadcast but unconfirmed transfer moves to `processing` with its
        blockchain data; `verify` later completes or fails it.
        """
        transaction = await self._get_transaction_or_raise(transaction_ref)
        self._require_sender(transaction, actor)
        if blockchain:
            if status not in (TransactionStatus.PROCESSING, TransactionStatus.COMPLETED):
                raise ValidationError(
                    "Blockchain data can only accompany a processing or completed status",
                    errors=[{"field": "blockchain", "message": "not allowed for this status"}],
                )
            if transaction.tx_hash:
                raise ConflictError(
                    f"Blockchain data already recorded for {transaction.transaction_code}",
                    code="BLOCKCHAIN_ALREADY_RECORDED",
                )
            fire_transition(
                TransactionStateMachine,
                "transaction",
                transaction.status,
                TRANSACTION_EVENT_FOR_STATUS[TransactionStatus(status).value],
            )
            self._apply_blockchain(transaction, blockchain)
        if status == TransactionStatus.FAILED:
            transaction.error_code = error_code or "FAILED"
            transaction.error_message = error_message
        await self._advance(transaction, status, actor.label)
        return transaction

    async def mark_failed(self, transaction: Transaction, code: str, message: str) -> Transaction:
        transaction.error_code = code
        transaction.error_message = message
        await self._advance(transaction, TransactionStatus.FAILED, "SYSTEM")
        return transaction

    async def _advance(
        self, transaction: Transaction, status: TransactionStatus, actor_label: str
    ) -> None:
        status = TransactionStatus(status)
        event_name = TRANSACTION_EVENT_FOR_STATUS.get(status.value)
        if event_name is None:
            raise ValidationError(f"Cannot move a transaction to status '{status.value}'")

        old_status = transaction.status
        new_status = fire_transition(
            TransactionStateMachine, "transaction", old_status, event_name
        )

        now = datetime.now(UTC)
        stamps: dict[str, Any] = {}
        if status == TransactionStatus.PROCESSING:
            stamps["processed_at"] = now
        elif status == TransactionStatus.COMPLETED:
            stamps["completed_at"] = now
            if transaction.processed_at is None:
                stamps["processed_at"] = now
        elif status == TransactionStatus.FAILED:
            stamps["failed_at"] = now

        await self._transaction_repo.transition(transaction, old_status, new_status, **stamps)
        logger.info(
            "transaction.status_changed",
            transaction_code=transaction.transaction_code,
            old_status=old_status,
            new_status=new_status,
            actor=actor_label,
        )

        if (
            status == TransactionStatus.COMPLETED
            and transaction.type == TransactionType.MILESTONE_PAYMENT
            and transaction.milestone_id is not None
        ):
            await self._settle_milestone(transaction, actor_label)

    async def _settle_milestone(self, transaction: Transaction, actor_label: str) -> None:
        """approved -> paid for the milestone this payment belongs to."""
        milestone = await self._milestone_repo.get_by_id(
            transaction.milestone_id, include_inactive=True
        )
        if milestone is None or milestone.status != MilestoneStatus.APPROVED:
            return
        if milestone.payment_transaction_id != transaction.id:
            logger.warning(
                "milestone.payment_mismatch",
                milestone_id=str(milestone.id),
                transaction_code=transaction.transaction_code,
            )
            return

        new_status = fire_transition(
            MilestoneStateMachine, "milestone", milestone.status, "mark_paid"
        )
        extra: dict[str, Any] = {}
        if not milestone.is_paid:
            extra.update(is_paid=True, paid_at=datetime.now(UTC))
        await self._milestone_repo.transition(
            milestone, MilestoneStatus.APPROVED.value, new_status, **extra
        )
        await self._event_repo.record(
            agreement_id=milestone.agreement_id,
            milestone_id=milestone.id,
            event_type=EventType.MILESTONE_PAID,
            old_status=MilestoneStatus.APPROVED.value,
            new_status=new_status,
            actor=actor_label,
            metadata={
                "transaction_code": transaction.transaction_code,
                "tx_hash": transaction.tx_hash,
            },
        )
        logger.info(
            "milestone.paid",
            milestone_id=str(milestone.id),
            transaction_code=transaction.transaction_code,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, actor: Actor, transaction_ref: str) -> tuple[Transaction, VerificationResult]:
        """Check the transaction's hash on-chain and reconcile its status.

        Valid: confirmations are recorded and a non-terminal transaction is
        completed. Reverted receipt: the transaction is marked failed. Amount
        or confirmation mismatch: reported, status unchanged.
        """
        if self._verifier is None:
            raise ValidationError("Blockchain verification is not configured")

        transaction = await self._get_transaction_or_raise(transaction_ref)
        self._require_participant(transaction, actor)
        if not transaction.tx_hash:
            raise ValidationError(
                f"Transaction {transaction.transaction_code} has no blockchain hash to verify"
            )

        result = await self._verifier.verify(
            VerificationRequest(
                tx_hash=transaction.tx_hash,
                network=transaction.network or self._default_network,
                expected_amount=transaction.amount,
            )
        )

        receipt = result.receipt
        if receipt is not None:
            transaction.confirmations = receipt.confirmations
            transaction.block_number = transaction.block_number or receipt.block_number
            transaction.block_hash = transaction.block_hash or receipt.block_hash
            if receipt.gas_used is not None and transaction.gas_used is None:
                transaction.gas_used = receipt.gas_used
            if receipt.gas_price is not None and transaction.gas_price is None:
                transaction.gas_price = str(receipt.gas_price)
            transaction.is_on_chain = True
            await self._transaction_repo.save(transaction)

        machine = TransactionStateMachine(current_status=transaction.status)
        if not machine.is_terminal:
            if result.is_valid:
                await self._advance(transaction, TransactionStatus.COMPLETED, actor.label)
            elif receipt is not None and not receipt.succeeded:
                await self.mark_failed(
                    transaction, "TRANSACTION_REVERTED", result.details or "Reverted on-chain"
                )

        logger.info(
            "transaction.verified",
            transaction_code=transaction.transaction_code,
            is_valid=result.is_valid,
            status=transaction.status,
        )
        return transaction, result

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_transaction(self, actor: Actor, transaction_ref: str) -> Transaction:
        transaction = await self._get_transaction_or_raise(transaction_ref)
        self._require_participant(transaction, actor)
        return transaction

    async def list_transactions(
        self,
        actor: Actor,
        type_: str | None = None,
        status: str | None = None,
        role: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Transaction], int]:
        return await self._transaction_repo.list_for_actor(
            actor,
            type_=type_,
            status=status,
            role=role,
            limit=limit,
            offset=(page - 1) * limit,
        )

    async def list_for_agreement(self, actor: Actor, agreement_ref: str) -> list[Transaction]:
        agreement = await self._agreement_repo.get_by_reference(agreement_ref)
        if agreement is None:
            raise NotFoundError("Agreement", agreement_ref)
        if resolve_party(agreement, actor) == Party.NEITHER:
            raise AuthorizationError("You are not a party to this agreement")
        return await self._transaction_repo.get_by_agreement(agreement.id)

    async def get_summary(self, actor: Actor) -> dict:
        month_start = datetime.now(UTC).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return {
            "total_sent": str(await self._transaction_repo.sum_amount(actor, "sender")),
            "total_received": str(await self._transaction_repo.sum_amount(actor, "receiver")),
            "pending_count": await self._transaction_repo.count(
                actor, status=TransactionStatus.PENDING.value
            ),
            "completed_this_month": await self._transaction_repo.count(
                actor, status=TransactionStatus.COMPLETED.value, since=month_start
            ),
        }

    async def get_statistics(self, actor: Actor) -> dict:
        by_type = {
            type_: {"count": count, "total_amount": str(amount), "total_fees": str(fees)}
            for type_, count, amount, fees in await self._transaction_repo.totals_by_type(actor)
        }
        return {
            "total_transactions": await self._transaction_repo.count(actor),
            "completed": sum(entry["count"] for entry in by_type.values()),
            "by_type": by_type,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_transaction_or_raise(self, transaction_ref: str) -> Transaction:
        transaction = await self._transaction_repo.get_by_reference(str(transaction_ref))
        if transaction is None:
            raise TransactionNotFoundError(str(transaction_ref))
        return transaction

    @staticmethod
    def _is_sender(transaction: Transaction, actor: Actor) -> bool:
        if actor.user_id is not None and transaction.from_user_id == actor.user_id:
            return True
        return same_wallet(transaction.from_wallet, actor.wallet_address)

    @staticmethod
    def _is_receiver(transaction: Transaction, actor: Actor) -> bool:
        if actor.user_id is not None and transaction.to_user_id == actor.user_id:
            return True
        return same_wallet(transaction.to_wallet, actor.wallet_address)

    def _require_sender(self, transaction: Transaction, actor: Actor) -> None:
        if not self._is_sender(transaction, actor):
            raise AuthorizationError("Only the sender can update this transaction")

    def _require_participant(self, transaction: Transaction, actor: Actor) -> None:
        if not (self._is_sender(transaction, actor) or self._is_receiver(transaction, actor)):
            raise AuthorizationError("You do not have access to this transaction")

    def _apply_blockchain(self, transaction: Transaction, blockchain: dict) -> None:
        tx_hash = blockchain.get("tx_hash") or blockchain.get("transaction_hash")
        if not tx_hash or not is_valid_tx_hash(tx_hash):
            raise ValidationError(
                "Invalid transaction hash format",
                errors=[{"field": "tx_hash", "message": "must be 0x followed by 64 hex characters"}],
            )
        transaction.tx_hash = tx_hash
        transaction.network = blockchain.get("network") or self._default_network
        transaction.block_number = blockchain.get("block_number")
        transaction.block_hash = blockchain.get("block_hash")
        transaction.gas_used = blockchain.get("gas_used")
        gas_price = blockchain.get("gas_price")
        transaction.gas_price = str(gas_price) if gas_price is not None else None
        transaction.confirmations = int(blockchain.get("confirmations") or 0)
        transaction.is_on_chain = True
