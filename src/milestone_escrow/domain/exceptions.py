"""Domain exceptions for the Milestone Escrow marketplace.

These exceptions are framework-agnostic and represent business rule violations.
Each carries the HTTP status it maps to; the API layer's exception handlers
translate them into the error envelope.
"""

from __future__ import annotations


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)

    @property
    def is_operational(self) -> bool:
        """Client-caused errors whose message is safe to show to the caller."""
        return self.status_code < 500


# --- Validation Errors (400) ---


class ValidationError(MarketplaceError):
    """Malformed input or a business precondition that does not hold."""

    status_code = 400

    def __init__(
        self,
        message: str,
        errors: list[dict] | None = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(message=message, code=code)
        self.errors = errors or []


class InvalidStateTransitionError(ValidationError):
    """Raised when an attempted state transition is not allowed.

    Example: draft -> completed (must go through negotiation and funding first)
    """

    def __init__(self, entity: str, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=(
                f"Cannot {attempted_event.replace('_', ' ')} {entity} "
                f"in status '{current_state}'"
            ),
            code="INVALID_STATE_TRANSITION",
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_event = attempted_event


class InsufficientEscrowError(ValidationError):
    """Raised when a release exceeds the amount remaining in escrow."""

    def __init__(self, requested: str, remaining: str) -> None:
        super().__init__(
            message=f"Release amount {requested} exceeds remaining escrow {remaining}",
            code="INSUFFICIENT_ESCROW",
        )
        self.requested = requested
        self.remaining = remaining


# --- Authentication / Authorization Errors (401 / 403) ---


class AuthenticationError(MarketplaceError):
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message=message, code="AUTHENTICATION_REQUIRED")


class AuthorizationError(MarketplaceError):
    """Raised when the caller has the wrong role or is not a party at all."""

    status_code = 403

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="FORBIDDEN")


# --- Lookup Errors (404) ---


class NotFoundError(MarketplaceError):
    status_code = 404

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(
            message=f"{entity} not found: {identifier}",
            code=f"{entity.upper()}_NOT_FOUND",
        )
        self.identifier = identifier


class AgreementNotFoundError(NotFoundError):
    def __init__(self, agreement_id: str) -> None:
        super().__init__("Agreement", agreement_id)


class MilestoneNotFoundError(NotFoundError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__("Milestone", milestone_id)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__("Transaction", transaction_id)


class ModificationNotFoundError(NotFoundError):
    def __init__(self, modification_id: str) -> None:
        super().__init__("Modification", modification_id)


# --- Conflict Errors (409) ---


class ConflictError(MarketplaceError):
    status_code = 409

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(message=message, code=code)


class ConcurrentModificationError(ConflictError):
    """Raised when a compare-and-set update loses a race with another request."""

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(
            message=f"{entity} {identifier} was modified concurrently, retry the request",
            code="CONCURRENT_MODIFICATION",
        )


class DuplicateOperationError(ConflictError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


# --- External Service Errors (500) ---


class ExternalServiceError(MarketplaceError):
    """An outbound call (RPC node, pinning service) failed or timed out."""

    status_code = 500

    def __init__(self, message: str, code: str = "EXTERNAL_SERVICE_ERROR") -> None:
        super().__init__(message=message, code=code)


class BlockchainRpcError(ExternalServiceError):
    def __init__(self, message: str, network: str | None = None) -> None:
        super().__init__(message=message, code="BLOCKCHAIN_RPC_ERROR")
        self.network = network


class StorageError(ExternalServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="STORAGE_ERROR")
