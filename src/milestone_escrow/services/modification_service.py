"""Modification Negotiation - change requests between the two parties.

Either party may raise a request against a non-terminal agreement; only the
other party may answer it, and only once. Approved requests are applied to
the agreement in the same transaction:

    payment_change   -> total_value, currency, platform_fee_percentage
    timeline_change  -> expected_end_date
    scope_change     -> title, description, requirements, deliverables
    milestone_change -> recorded only
    other            -> recorded only
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.enums import (
    TERMINAL_AGREEMENT_STATUSES,
    Currency,
    EventType,
    ModificationStatus,
    ModificationType,
)
from milestone_escrow.domain.exceptions import (
    AuthorizationError,
    ModificationNotFoundError,
    ValidationError,
)
from milestone_escrow.domain.parties import require_party
from milestone_escrow.infrastructure.database.orm_models import Modification
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    EventRepository,
    MilestoneRepository,
    ModificationRepository,
    parse_uuid,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.guards import get_agreement_or_raise

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.parties import Actor
    from milestone_escrow.infrastructure.database.orm_models import Agreement

logger = get_logger(__name__)

ALLOWED_KEYS: dict[ModificationType, frozenset[str]] = {
    ModificationType.PAYMENT_CHANGE: frozenset(
        {"total_value", "currency", "platform_fee_percentage"}
    ),
    ModificationType.TIMELINE_CHANGE: frozenset({"expected_end_date"}),
    ModificationType.SCOPE_CHANGE: frozenset(
        {"title", "description", "requirements", "deliverables"}
    ),
}


def _parse_decimal(field: str, value: Any) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(
            f"'{field}' must be a number",
            errors=[{"field": field, "message": "must be a number"}],
        ) from exc
    # NaN and Infinity parse but cannot be stored or compared
    if not parsed.is_finite():
        raise ValidationError(
            f"'{field}' must be a finite number",
            errors=[{"field": field, "message": "must be a finite number"}],
        )
    return parsed


def _parse_datetime(field: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as exc:
            raise ValidationError(
                f"'{field}' must be an ISO 8601 date",
                errors=[{"field": field, "message": "must be an ISO 8601 date"}],
            ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_new_value(modification_type: ModificationType, new_value: dict | None) -> dict:
    """Check the proposed values for a typed modification and return them."""
    new_value = dict(new_value or {})
    allowed = ALLOWED_KEYS.get(modification_type)
    if allowed is None:
        return new_value

    if not new_value:
        raise ValidationError(
            f"A {modification_type.value} request must propose at least one of: "
            f"{', '.join(sorted(allowed))}",
            errors=[{"field": "new_value", "message": "required"}],
        )
    unknown = set(new_value) - allowed
    if unknown:
        raise ValidationError(
            f"Unsupported fields for {modification_type.value}: {', '.join(sorted(unknown))}",
            errors=[{"field": key, "message": "not allowed"} for key in sorted(unknown)],
        )

    if "total_value" in new_value:
        if _parse_decimal("total_value", new_value["total_value"]) <= 0:
            raise ValidationError("total_value must be positive")
    if "platform_fee_percentage" in new_value:
        percentage = _parse_decimal("platform_fee_percentage", new_value["platform_fee_percentage"])
        if not 0 <= percentage <= 100:
            raise ValidationError("platform_fee_percentage must be between 0 and 100")
    if "currency" in new_value and new_value["currency"] not in {c.value for c in Currency}:
        raise ValidationError(f"Unsupported currency: {new_value['currency']}")
    if "expected_end_date" in new_value:
        _parse_datetime("expected_end_date", new_value["expected_end_date"])
    return new_value


class ModificationService:
    """Records change requests and applies approved ones."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._modification_repo = ModificationRepository(session)
        self._agreement_repo = AgreementRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._event_repo = EventRepository(session)

    async def request(
        self,
        actor: Actor,
        agreement_ref: str,
        modification_type: ModificationType,
        description: str,
        new_value: dict | None = None,
    ) -> Modification:
        agreement = await get_agreement_or_raise(self._agreement_repo, agreement_ref)
        party = require_party(agreement, actor, action="request modifications")
        if agreement.status in TERMINAL_AGREEMENT_STATUSES:
            raise ValidationError(
                f"Cannot modify an agreement in status '{agreement.status}'"
            )

        modification_type = ModificationType(modification_type)
        new_value = validate_new_value(modification_type, new_value)
        await self._check_total_covers_milestones(agreement, modification_type, new_value)
        modification = await self._modification_repo.add(
            Modification(
                agreement_id=agreement.id,
                requested_by_party=party.value,
                requested_by=actor.label,
                modification_type=modification_type.value,
                description=description,
                previous_value=self._current_values(agreement, modification_type, new_value),
                new_value=new_value,
                status=ModificationStatus.PENDING.value,
            )
        )
        await self._event_repo.record(
            agreement_id=agreement.id,
            event_type=EventType.MODIFICATION_REQUESTED,
            old_status=agreement.status,
            new_status=agreement.status,
            actor=actor.label,
            metadata={
                "modification_id": str(modification.id),
                "modification_type": modification_type.value,
                "requested_by_party": party.value,
            },
        )
        logger.info(
            "modification.requested",
            agreement_code=agreement.agreement_code,
            modification_type=modification_type.value,
            party=party.value,
        )
        return modification

    async def respond(
        self,
        actor: Actor,
        agreement_ref: str,
        modification_ref: str,
        approve: bool,
        note: str | None = None,
    ) -> tuple[Modification, Agreement]:
        """Approve or reject a pending modification as the non-requesting party."""
        agreement = await get_agreement_or_raise(self._agreement_repo, agreement_ref)
        party = require_party(agreement, actor, action="respond to modifications")

        modification_id = parse_uuid(modification_ref)
        modification = (
            await self._modification_repo.get_by_id(modification_id) if modification_id else None
        )
        if modification is None or modification.agreement_id != agreement.id:
            raise ModificationNotFoundError(str(modification_ref))
        if modification.requested_by_party == party.value:
            raise AuthorizationError("You cannot respond to your own modification request")
        if modification.status != ModificationStatus.PENDING:
            raise ValidationError(
                f"Modification has already been {modification.status}",
                code="MODIFICATION_ALREADY_ANSWERED",
            )
        if approve and agreement.status in TERMINAL_AGREEMENT_STATUSES:
            raise ValidationError(
                f"Cannot modify an agreement in status '{agreement.status}'"
            )
        if approve:
            # Milestones may have changed since the request was raised
            await self._check_total_covers_milestones(
                agreement,
                ModificationType(modification.modification_type),
                modification.new_value or {},
            )

        new_status = ModificationStatus.APPROVED if approve else ModificationStatus.REJECTED
        await self._modification_repo.transition(
            modification,
            ModificationStatus.PENDING.value,
            new_status.value,
            responded_by=actor.label,
            response_note=note,
            responded_at=datetime.now(UTC),
        )
        if approve:
            self._apply(agreement, ModificationType(modification.modification_type),
                        modification.new_value or {})
            await self._agreement_repo.save(agreement)

        await self._event_repo.record(
            agreement_id=agreement.id,
            event_type=(
                EventType.MODIFICATION_APPROVED if approve else EventType.MODIFICATION_REJECTED
            ),
            old_status=agreement.status,
            new_status=agreement.status,
            actor=actor.label,
            metadata={
                "modification_id": str(modification.id),
                "modification_type": modification.modification_type,
                "note": note,
            },
        )
        logger.info(
            "modification.answered",
            agreement_code=agreement.agreement_code,
            modification_id=str(modification.id),
            status=new_status.value,
        )
        return modification, agreement

    async def list_for_agreement(self, agreement: Agreement) -> list[Modification]:
        return await self._modification_repo.get_by_agreement(agreement.id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _check_total_covers_milestones(
        self, agreement: Agreement, modification_type: ModificationType, new_value: dict
    ) -> None:
        if modification_type != ModificationType.PAYMENT_CHANGE or "total_value" not in new_value:
            return
        allocated = await self._milestone_repo.sum_values(agreement.id)
        if _parse_decimal("total_value", new_value["total_value"]) < allocated:
            raise ValidationError(
                f"Total value cannot be lower than the milestone values ({allocated})",
                errors=[{"field": "total_value", "message": "below milestone sum"}],
            )

    @staticmethod
    def _current_values(
        agreement: Agreement, modification_type: ModificationType, new_value: dict
    ) -> dict | None:
        if modification_type not in ALLOWED_KEYS:
            return None
        snapshot = {}
        for key in new_value:
            current = getattr(agreement, key)
            if isinstance(current, Decimal):
                current = str(current)
            elif isinstance(current, datetime):
                current = current.isoformat()
            snapshot[key] = current
        return snapshot

    @staticmethod
    def _apply(agreement: Agreement, modification_type: ModificationType, new_value: dict) -> None:
        if modification_type == ModificationType.PAYMENT_CHANGE:
            if "currency" in new_value:
                agreement.currency = new_value["currency"]
            if "platform_fee_percentage" in new_value:
                agreement.platform_fee_percentage = _parse_decimal(
                    "platform_fee_percentage", new_value["platform_fee_percentage"]
                )
            total = new_value.get("total_value", agreement.total_value)
            EscrowLedger.apply_total(agreement, _parse_decimal("total_value", total))
        elif modification_type == ModificationType.TIMELINE_CHANGE:
            agreement.expected_end_date = _parse_datetime(
                "expected_end_date", new_value["expected_end_date"]
            )
        elif modification_type == ModificationType.SCOPE_CHANGE:
            for key in ("title", "description", "requirements", "deliverables"):
                if key in new_value:
                    setattr(agreement, key, new_value[key])
