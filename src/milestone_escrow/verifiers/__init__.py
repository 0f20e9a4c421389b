"""On-chain verification.

    - JsonRpcClient:       RpcClient over Ethereum JSON-RPC (httpx)
    - BlockchainVerifier:  status / confirmations / amount checks on a receipt
"""

from milestone_escrow.domain.protocols import (
    ChainReceipt,
    RpcClient,
    TransactionVerifier,
    VerificationRequest,
    VerificationResult,
)
from milestone_escrow.verifiers.blockchain import (
    BlockchainVerifier,
    JsonRpcClient,
    is_valid_tx_hash,
)

__all__ = [
    "BlockchainVerifier",
    "ChainReceipt",
    "JsonRpcClient",
    "RpcClient",
    "TransactionVerifier",
    "VerificationRequest",
    "VerificationResult",
    "is_valid_tx_hash",
]
