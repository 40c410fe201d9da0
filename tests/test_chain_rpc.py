"""
Chain RPC Client Test Suite
ERC20 calldata encoding, balance parsing and JSON-RPC transport failures
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import web

from services.chain_rpc import (
    BALANCE_OF_SELECTOR, TRANSFER_SELECTOR, ChainRPCClient, ChainRPCError, encode_balance_of, encode_transfer
)
from services.token_registry import TokenRegistry
from tests.card_order_test_foundation import json_rpc_endpoint

OWNER = "0x" + "ab" * 20
RECIPIENT = "0x" + "cd" * 20


class TestCalldataEncoding:
    """Test ABI encoding of ERC20 calls"""

    def test_transfer_calldata(self):
        """Test transfer(address,uint256) encoding of 50 USDC"""
        calldata = encode_transfer(RECIPIENT, 50_000_000)

        assert calldata.startswith(TRANSFER_SELECTOR)
        assert len(calldata) == 10 + 64 + 64
        assert calldata[10:74] == "0" * 24 + "cd" * 20
        assert int(calldata[74:], 16) == 50_000_000

    def test_balance_of_calldata(self):
        """Test balanceOf(address) encoding lowercases the address"""
        calldata = encode_balance_of("0x" + "AB" * 20)

        assert calldata == BALANCE_OF_SELECTOR + "0" * 24 + "ab" * 20

    @pytest.mark.parametrize("address", ["", "0x1234", "ab" * 21, "0x" + "zz" * 20])
    def test_invalid_addresses_rejected(self, address):
        """Test malformed EVM addresses raise ChainRPCError"""
        with pytest.raises(ChainRPCError):
            encode_transfer(address, 1)


class TestBalanceReads:
    """Test balance parsing with _rpc patched"""

    @pytest.mark.asyncio
    async def test_erc20_balance_scaled_by_decimals(self):
        """Test eth_call result is scaled by token decimals"""
        token = TokenRegistry().lookup("USDC", "MAINET", "ethereum", "Base")
        client = ChainRPCClient(timeout_seconds=1)

        with patch.object(client, "_rpc", AsyncMock(return_value=hex(75_250_000))) as rpc:
            balance = await client.get_token_balance(token, OWNER)

        assert balance == "75.25"
        method = rpc.await_args.args[1]
        assert method == "eth_call"

    @pytest.mark.asyncio
    async def test_spl_balance_without_token_account(self):
        """Test a Solana owner without a token account has zero balance"""
        token = TokenRegistry().lookup("USDC", "MAINET", "solana", "Solana")
        client = ChainRPCClient(timeout_seconds=1)

        with patch.object(client, "_rpc", AsyncMock(return_value={"value": []})):
            balance = await client.get_token_balance(token, "SoLanaOwner1111111111111111111111111111111")

        assert balance == "0"

    @pytest.mark.asyncio
    async def test_spl_balance_sums_accounts(self):
        """Test SPL balances are summed across token accounts"""
        token = TokenRegistry().lookup("USDC", "MAINET", "solana", "Solana")
        client = ChainRPCClient(timeout_seconds=1)
        responses = [
            {"value": [{"pubkey": "acct1"}, {"pubkey": "acct2"}]},
            {"value": {"amount": "1500000"}},
            {"value": {"amount": "250000"}},
        ]

        with patch.object(client, "_rpc", AsyncMock(side_effect=responses)):
            balance = await client.get_token_balance(token, "SoLanaOwner1111111111111111111111111111111")

        assert balance == "1.75"

    @pytest.mark.asyncio
    async def test_allowance_decimal(self):
        """Test allowance is returned as a Decimal token amount"""
        token = TokenRegistry().lookup("USDC", "MAINET", "ethereum", "Base")
        client = ChainRPCClient(timeout_seconds=1)

        with patch.object(client, "_rpc", AsyncMock(return_value=hex(50_000_000))):
            allowance = await client.get_erc20_allowance(token, OWNER, RECIPIENT)

        assert allowance == Decimal("50")

    def test_receipt_status(self):
        """Test receipt status parsing"""
        assert ChainRPCClient.receipt_status({"status": "0x1"}) == 1
        assert ChainRPCClient.receipt_status({"status": "0x0"}) == 0
        assert ChainRPCClient.receipt_status({}) is None


class TestTransportErrors:
    """Test every transport failure surfaces as ChainRPCError against a local endpoint"""

    @pytest.mark.asyncio
    async def test_timeout_is_rpc_error(self):
        """Test a request exceeding the client timeout raises ChainRPCError"""
        async def slow_handler(request):
            await asyncio.sleep(0.5)
            return web.json_response({"jsonrpc": "2.0", "id": 1, "result": None})

        async with json_rpc_endpoint(slow_handler) as rpc_url:
            token = TokenRegistry(rpc_url_overrides={"Base": rpc_url}).lookup("USDC", "MAINET", "ethereum", "Base")
            with pytest.raises(ChainRPCError, match="timed out"):
                await ChainRPCClient(timeout_seconds=0.1).get_transaction_receipt(token, "0x" + "12" * 32)

    @pytest.mark.asyncio
    async def test_non_object_body_is_rpc_error(self):
        """Test a JSON body that is not an object raises ChainRPCError"""
        async def list_handler(request):
            return web.json_response(["unexpected"])

        async with json_rpc_endpoint(list_handler) as rpc_url:
            token = TokenRegistry(rpc_url_overrides={"Base": rpc_url}).lookup("USDC", "MAINET", "ethereum", "Base")
            with pytest.raises(ChainRPCError, match="non-object response"):
                await ChainRPCClient(timeout_seconds=1).get_token_balance(token, OWNER)

    @pytest.mark.asyncio
    async def test_invalid_json_is_rpc_error(self):
        """Test a body that is not JSON raises ChainRPCError"""
        async def html_handler(request):
            return web.Response(text="<html>bad gateway</html>", content_type="text/html")

        async with json_rpc_endpoint(html_handler) as rpc_url:
            token = TokenRegistry(rpc_url_overrides={"Base": rpc_url}).lookup("USDC", "MAINET", "ethereum", "Base")
            with pytest.raises(ChainRPCError, match="invalid JSON"):
                await ChainRPCClient(timeout_seconds=1).get_token_balance(token, OWNER)

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        """Test a non-200 response raises ChainRPCError with the status"""
        async def failing_handler(request):
            return web.Response(status=502, text="upstream unavailable")

        async with json_rpc_endpoint(failing_handler) as rpc_url:
            token = TokenRegistry(rpc_url_overrides={"Base": rpc_url}).lookup("USDC", "MAINET", "ethereum", "Base")
            with pytest.raises(ChainRPCError, match="HTTP 502"):
                await ChainRPCClient(timeout_seconds=1).get_token_balance(token, OWNER)
