"""Collaborator Protocols.

Defines the narrow interfaces the core calls out through: the blockchain
RPC client and verifier, the storage uploader for milestone evidence, and the
identity resolver used to link wallet-only parties to registered users.
These are Protocols (structural subtyping) so concrete implementations
don't need to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from httpx, SQLAlchemy, or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal


# ---------------------------------------------------------------------------
# Blockchain verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainReceipt:
    """On-chain outcome of a transaction, as reported by an RPC node.

    Attributes:
        tx_hash: The 0x-prefixed transaction hash.
        network: Network name the receipt was fetched from.
        succeeded: Receipt status == 1.
        confirmations: Head block number minus the receipt's block number.
        value: Transferred value in ether.
        block_number: Block the transaction was mined in.
    """

    tx_hash: str
    network: str
    succeeded: bool
    confirmations: int
    value: Decimal
    block_number: int
    block_hash: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    gas_used: int | None = None
    gas_price: int | None = None


@dataclass(frozen=True)
class VerificationRequest:
    """Input to the blockchain verifier.

    Attributes:
        tx_hash: The transaction hash to look up.
        network: Network name (must exist in the configured network table).
        expected_amount: Optional value (in ether) the transaction must carry.
        tolerance: Allowed relative deviation from expected_amount.
    """

    tx_hash: str
    network: str
    expected_amount: Decimal | None = None
    tolerance: Decimal | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Output from the blockchain verifier.

    Attributes:
        is_valid: Whether the on-chain transaction satisfies every check.
        details: Human-readable explanation of the result.
        receipt: The receipt the decision was based on (None if not mined).
        checks: Per-check outcome, e.g. {"status": True, "amount": False}.
        error: Error message if the transaction itself is unusable.
    """

    is_valid: bool
    details: str = ""
    receipt: ChainReceipt | None = None
    checks: dict = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        """Serialize for API responses and audit metadata."""
        receipt = None
        if self.receipt is not None:
            receipt = {
                "tx_hash": self.receipt.tx_hash,
                "network": self.receipt.network,
                "succeeded": self.receipt.succeeded,
                "confirmations": self.receipt.confirmations,
                "value": str(self.receipt.value),
                "block_number": self.receipt.block_number,
                "block_hash": self.receipt.block_hash,
                "from_address": self.receipt.from_address,
                "to_address": self.receipt.to_address,
                "gas_used": self.receipt.gas_used,
                "gas_price": self.receipt.gas_price,
            }
        return {
            "is_valid": self.is_valid,
            "details": self.details,
            "receipt": receipt,
            "checks": self.checks,
            "error": self.error,
        }


@runtime_checkable
class RpcClient(Protocol):
    """Fetches transaction receipts from a remote node."""

    async def get_receipt(self, tx_hash: str, network: str) -> ChainReceipt:
        """Return the receipt for tx_hash on the named network.

        Raises:
            ValidationError: If the hash is malformed, unknown, or not yet mined.
            BlockchainRpcError: If the node cannot be reached.
        """
        ...


@runtime_checkable
class TransactionVerifier(Protocol):
    """Protocol that on-chain verifiers must satisfy.

    Concrete implementation:
        - verifiers/blockchain.py (JSON-RPC over httpx)
    """

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        ...


# ---------------------------------------------------------------------------
# Evidence storage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadedFile:
    """A file received from the caller, before it is stored."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class StoredFile:
    """Where a stored file ended up."""

    filename: str
    url: str
    ipfs_hash: str | None = None
    size: int = 0
    content_type: str = "application/octet-stream"

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "url": self.url,
            "ipfs_hash": self.ipfs_hash,
            "size": self.size,
            "content_type": self.content_type,
        }


@runtime_checkable
class StorageUploader(Protocol):
    async def store(self, file: UploadedFile) -> StoredFile:
        ...


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@runtime_checkable
class IdentityResolver(Protocol):
    async def resolve(self, wallet_address: str) -> uuid.UUID | None:
        """Return the registered user id for a wallet, or None."""
        ...
