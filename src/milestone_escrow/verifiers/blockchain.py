"""BlockchainVerifier - confirms a transaction hash's on-chain outcome.

Verification flow:
    1. Validate the hash format (0x + 64 hex chars).
    2. Fetch the transaction, its receipt and the head block number from the
       RPC endpoint configured for the requested network (JSON-RPC over httpx).
    3. Check receipt status == 1 and confirmations >= the configured minimum.
    4. Optionally check the transferred value against an expected amount
       within a relative tolerance (default 1%).

Failures are not retried here; the caller re-invokes verification.
"""

from __future__ import annotations

import itertools
import re
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx

from milestone_escrow.domain.exceptions import BlockchainRpcError, ValidationError
from milestone_escrow.domain.protocols import (
    ChainReceipt,
    VerificationRequest,
    VerificationResult,
)
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from milestone_escrow.config import NetworkConfig, Settings
    from milestone_escrow.domain.protocols import RpcClient

logger = get_logger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
WEI_PER_ETHER = Decimal(10) ** 18
DEFAULT_TOLERANCE = Decimal("0.01")


def is_valid_tx_hash(tx_hash: str) -> bool:
    return bool(TX_HASH_PATTERN.match(tx_hash or ""))


def wei_to_ether(wei: int) -> Decimal:
    return Decimal(wei) / WEI_PER_ETHER


def _hex_to_int(value: str | None) -> int | None:
    if value is None:
        return None
    return int(value, 16)


class JsonRpcClient:
    """Minimal Ethereum JSON-RPC client, one endpoint per named network."""

    def __init__(
        self,
        networks: Mapping[str, NetworkConfig],
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._networks = dict(networks)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Settings) -> JsonRpcClient:
        return cls(networks=settings.networks, timeout=settings.rpc_timeout_seconds)

    @property
    def supported_networks(self) -> list[str]:
        return sorted(self._networks)

    async def _call(self, network: str, method: str, params: list[Any]) -> Any:
        config = self._networks.get(network)
        if config is None:
            raise ValidationError(
                f"Unsupported network: {network}",
                errors=[{"field": "network", "message": f"expected one of {self.supported_networks}"}],
            )

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(config.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise BlockchainRpcError(f"RPC call {method} timed out", network=network) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise BlockchainRpcError(f"RPC call {method} failed: {exc}", network=network) from exc

        if body.get("error"):
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise BlockchainRpcError(f"RPC call {method} returned an error: {message}", network=network)
        return body.get("result")

    async def get_receipt(self, tx_hash: str, network: str) -> ChainReceipt:
        """Fetch and normalize the receipt for tx_hash.

        Raises:
            ValidationError: malformed hash, unknown network, unknown or unmined transaction.
            BlockchainRpcError: the node could not be reached or answered with an error.
        """
        if not is_valid_tx_hash(tx_hash):
            raise ValidationError(
                "Invalid transaction hash format",
                errors=[{"field": "tx_hash", "message": "must be 0x followed by 64 hex characters"}],
            )

        tx = await self._call(network, "eth_getTransactionByHash", [tx_hash])
        if tx is None:
            raise ValidationError(f"Transaction not found on {network}: {tx_hash}")

        receipt = await self._call(network, "eth_getTransactionReceipt", [tx_hash])
        if receipt is None or receipt.get("blockNumber") is None:
            raise ValidationError(f"Transaction not yet mined: {tx_hash}")

        head = _hex_to_int(await self._call(network, "eth_blockNumber", [])) or 0
        block_number = _hex_to_int(receipt["blockNumber"]) or 0
        gas_price = receipt.get("effectiveGasPrice") or tx.get("gasPrice")

        return ChainReceipt(
            tx_hash=tx_hash,
            network=network,
            succeeded=_hex_to_int(receipt.get("status", "0x0")) == 1,
            confirmations=max(head - block_number, 0),
            value=wei_to_ether(_hex_to_int(tx.get("value", "0x0")) or 0),
            block_number=block_number,
            block_hash=receipt.get("blockHash"),
            from_address=(receipt.get("from") or tx.get("from") or "").lower() or None,
            to_address=(receipt.get("to") or tx.get("to") or "").lower() or None,
            gas_used=_hex_to_int(receipt.get("gasUsed")),
            gas_price=_hex_to_int(gas_price),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class BlockchainVerifier:
    """TransactionVerifier that checks status, confirmations and amount."""

    def __init__(
        self,
        rpc_client: RpcClient,
        default_tolerance: Decimal = DEFAULT_TOLERANCE,
        min_confirmations: int = 0,
    ) -> None:
        self._rpc = rpc_client
        self._default_tolerance = default_tolerance
        self._min_confirmations = min_confirmations

    @classmethod
    def from_settings(cls, settings: Settings, rpc_client: RpcClient | None = None) -> BlockchainVerifier:
        return cls(
            rpc_client=rpc_client or JsonRpcClient.from_settings(settings),
            default_tolerance=settings.verification_tolerance,
            min_confirmations=settings.verification_min_confirmations,
        )

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        receipt = await self._rpc.get_receipt(request.tx_hash, request.network)

        checks: dict[str, bool] = {
            "status": receipt.succeeded,
            "confirmations": receipt.confirmations >= self._min_confirmations,
        }
        problems: list[str] = []
        if not receipt.succeeded:
            problems.append("transaction reverted on-chain")
        if not checks["confirmations"]:
            problems.append(
                f"{receipt.confirmations} confirmations, {self._min_confirmations} required"
            )

        if request.expected_amount is not None:
            tolerance = (
                request.tolerance if request.tolerance is not None else self._default_tolerance
            )
            expected = Decimal(request.expected_amount)
            checks["amount"] = abs(receipt.value - expected) <= expected * tolerance
            if not checks["amount"]:
                problems.append(
                    f"transferred {receipt.value} but expected {expected} (tolerance {tolerance})"
                )

        is_valid = all(checks.values())
        details = (
            f"Verified on {receipt.network} with {receipt.confirmations} confirmations"
            if is_valid
            else "; ".join(problems)
        )
        logger.info(
            "blockchain.verified",
            tx_hash=request.tx_hash,
            network=request.network,
            is_valid=is_valid,
            checks=checks,
        )
        return VerificationResult(
            is_valid=is_valid,
            details=details,
            receipt=receipt,
            checks=checks,
            error=None if receipt.succeeded else "TRANSACTION_REVERTED",
        )
