"""Tests for the JSON-RPC client and BlockchainVerifier.

The node is replaced by an httpx.MockTransport that answers the three
calls a receipt lookup makes.
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from milestone_escrow.config import NetworkConfig
from milestone_escrow.domain.exceptions import BlockchainRpcError, ValidationError
from milestone_escrow.verifiers import (
    BlockchainVerifier,
    JsonRpcClient,
    VerificationRequest,
    is_valid_tx_hash,
)

TX_HASH = "0x" + "ab" * 32
NETWORKS = {"local": NetworkConfig(rpc_url="http://node.test", chain_id=31337)}
ONE_ETHER = 10**18


def _node(
    status: str = "0x1",
    value: int = ONE_ETHER,
    block: int = 100,
    head: int = 112,
    error: dict | None = None,
) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        call = json.loads(request.content)
        if error is not None:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": call["id"], "error": error})
        results = {
            "eth_getTransactionByHash": {
                "hash": TX_HASH,
                "value": hex(value),
                "from": "0xAAAA000000000000000000000000000000000001",
                "to": "0xBBBB000000000000000000000000000000000002",
                "gasPrice": hex(3_000_000_000),
            },
            "eth_getTransactionReceipt": {
                "status": status,
                "blockNumber": hex(block),
                "blockHash": "0x" + "cd" * 32,
                "gasUsed": hex(21000),
            },
            "eth_blockNumber": hex(head),
        }
        return httpx.Response(
            200, json={"jsonrpc": "2.0", "id": call["id"], "result": results[call["method"]]}
        )

    return httpx.MockTransport(handler)


def _verifier(transport: httpx.MockTransport, min_confirmations: int = 0) -> BlockchainVerifier:
    rpc = JsonRpcClient(NETWORKS, client=httpx.AsyncClient(transport=transport))
    return BlockchainVerifier(rpc, min_confirmations=min_confirmations)


class TestHashFormat:
    def test_valid(self) -> None:
        assert is_valid_tx_hash(TX_HASH)

    def test_invalid(self) -> None:
        assert not is_valid_tx_hash("0x1234")
        assert not is_valid_tx_hash("")


class TestJsonRpcClient:
    @pytest.mark.asyncio
    async def test_receipt_normalized(self) -> None:
        rpc = JsonRpcClient(NETWORKS, client=httpx.AsyncClient(transport=_node()))

        receipt = await rpc.get_receipt(TX_HASH, "local")

        assert receipt.succeeded is True
        assert receipt.confirmations == 12
        assert receipt.block_number == 100
        assert receipt.value == Decimal("1")
        assert receipt.gas_used == 21000
        assert receipt.gas_price == 3_000_000_000
        assert receipt.from_address == "0xaaaa000000000000000000000000000000000001"

    @pytest.mark.asyncio
    async def test_malformed_hash(self) -> None:
        rpc = JsonRpcClient(NETWORKS, client=httpx.AsyncClient(transport=_node()))
        with pytest.raises(ValidationError, match="Invalid transaction hash"):
            await rpc.get_receipt("0xnope", "local")

    @pytest.mark.asyncio
    async def test_unknown_network(self) -> None:
        rpc = JsonRpcClient(NETWORKS, client=httpx.AsyncClient(transport=_node()))
        with pytest.raises(ValidationError, match="Unsupported network"):
            await rpc.get_receipt(TX_HASH, "mainnet")

    @pytest.mark.asyncio
    async def test_rpc_error(self) -> None:
        transport = _node(error={"code": -32000, "message": "header not found"})
        rpc = JsonRpcClient(NETWORKS, client=httpx.AsyncClient(transport=transport))

        with pytest.raises(BlockchainRpcError, match="header not found"):
            await rpc.get_receipt(TX_HASH, "local")

    @pytest.mark.asyncio
    async def test_node_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        rpc = JsonRpcClient(
            NETWORKS, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        with pytest.raises(BlockchainRpcError):
            await rpc.get_receipt(TX_HASH, "local")


class TestBlockchainVerifier:
    @pytest.mark.asyncio
    async def test_valid_transaction(self) -> None:
        result = await _verifier(_node()).verify(
            VerificationRequest(tx_hash=TX_HASH, network="local", expected_amount=Decimal("1"))
        )

        assert result.is_valid
        assert result.checks == {"status": True, "confirmations": True, "amount": True}
        assert result.error is None
        assert "12 confirmations" in result.details

    @pytest.mark.asyncio
    async def test_reverted(self) -> None:
        result = await _verifier(_node(status="0x0")).verify(
            VerificationRequest(tx_hash=TX_HASH, network="local")
        )

        assert not result.is_valid
        assert result.error == "TRANSACTION_REVERTED"
        assert "reverted" in result.details

    @pytest.mark.asyncio
    async def test_amount_within_tolerance(self) -> None:
        result = await _verifier(_node(value=ONE_ETHER * 995 // 1000)).verify(
            VerificationRequest(tx_hash=TX_HASH, network="local", expected_amount=Decimal("1"))
        )
        assert result.checks["amount"] is True

    @pytest.mark.asyncio
    async def test_amount_mismatch(self) -> None:
        result = await _verifier(_node(value=ONE_ETHER // 2)).verify(
            VerificationRequest(tx_hash=TX_HASH, network="local", expected_amount=Decimal("1"))
        )

        assert not result.is_valid
        assert result.checks["amount"] is False
        assert result.error is None
        assert "expected 1" in result.details

    @pytest.mark.asyncio
    async def test_not_enough_confirmations(self) -> None:
        result = await _verifier(_node(head=101), min_confirmations=6).verify(
            VerificationRequest(tx_hash=TX_HASH, network="local")
        )

        assert not result.is_valid
        assert result.checks["confirmations"] is False
        assert "6 required" in result.details

    @pytest.mark.asyncio
    async def test_result_serializes(self) -> None:
        result = await _verifier(_node()).verify(
            VerificationRequest(tx_hash=TX_HASH, network="local")
        )

        data = result.to_dict()
        assert data["receipt"]["value"] == "1"
        assert data["receipt"]["block_number"] == 100
