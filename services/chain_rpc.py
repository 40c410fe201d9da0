"""Blockchain JSON-RPC client for ERC20 and SPL token reads"""

import asyncio
import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.token_registry import TokenInfo
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

# ERC20 function selectors
BALANCE_OF_SELECTOR = "0x70a08231"
ALLOWANCE_SELECTOR = "0xdd62ed3e"
TRANSFER_SELECTOR = "0xa9059cbb"

SPL_TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


class ChainRPCError(Exception):
    """Custom exception for blockchain RPC errors"""

    pass


def _pad_address(address: str) -> str:
    if not isinstance(address, str) or not address.startswith("0x") or len(address) != 42:
        raise ChainRPCError(f"Invalid EVM address: {address!r}")
    try:
        int(address[2:], 16)
    except ValueError as e:
        raise ChainRPCError(f"Invalid EVM address: {address!r}") from e
    return address[2:].lower().rjust(64, "0")


def _pad_uint(value: int) -> str:
    if value < 0:
        raise ChainRPCError(f"uint256 cannot be negative: {value}")
    return format(value, "x").rjust(64, "0")


def encode_balance_of(owner: str) -> str:
    return BALANCE_OF_SELECTOR + _pad_address(owner)


def encode_allowance(owner: str, spender: str) -> str:
    return ALLOWANCE_SELECTOR + _pad_address(owner) + _pad_address(spender)


def encode_transfer(recipient: str, amount_base_units: int) -> str:
    """Calldata for ERC20 transfer(address,uint256)"""
    return TRANSFER_SELECTOR + _pad_address(recipient) + _pad_uint(amount_base_units)


def _hex_to_int(value: Any) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ChainRPCError(f"Unexpected hex quantity: {value!r}")
    if value == "0x":
        return 0
    return int(value, 16)


class ChainRPCClient:
    """Thin async JSON-RPC client; one aiohttp session per call"""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.RPC_TIMEOUT_SECONDS)
        self._ids = itertools.count(1)

    async def _rpc(self, rpc_url: str, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    rpc_url, json=payload, headers={"Content-Type": "application/json"}
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise ChainRPCError(f"{method} HTTP {response.status}: {error_text[:200]}")
                    body = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ChainRPCError(f"{method} network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ChainRPCError(f"{method} timed out after {self.timeout.total}s") from e
        except ValueError as e:
            raise ChainRPCError(f"{method} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise ChainRPCError(f"{method} returned a non-object response: {str(body)[:200]}")
        if body.get("error"):
            raise ChainRPCError(f"{method} RPC error: {body['error']}")
        return body.get("result")

    async def get_token_balance(self, token: TokenInfo, owner_address: str) -> str:
        """Gross token balance of owner_address as a decimal string"""
        if token.is_evm:
            result = await self._rpc(
                token.rpc_url,
                "eth_call",
                [{"to": token.token_address, "data": encode_balance_of(owner_address)}, "latest"],
            )
            amount = MonetaryDecimal.from_base_units(_hex_to_int(result), token.decimals)
            return MonetaryDecimal.format_amount(amount)

        return await self._get_spl_balance(token, owner_address)

    async def _get_spl_balance(self, token: TokenInfo, owner_address: str) -> str:
        accounts = await self._rpc(
            token.rpc_url,
            "getTokenAccountsByOwner",
            [owner_address, {"mint": token.token_address}, {"encoding": "jsonParsed"}],
        )
        value = (accounts or {}).get("value") or []
        if not value:
            # No associated token account yet
            return "0"

        total = Decimal("0")
        for account in value:
            balance = await self._rpc(token.rpc_url, "getTokenAccountBalance", [account["pubkey"]])
            raw_amount = ((balance or {}).get("value") or {}).get("amount")
            if raw_amount is None:
                raise ChainRPCError(f"getTokenAccountBalance returned no amount for {account['pubkey']}")
            total += MonetaryDecimal.from_base_units(raw_amount, token.decimals)
        return MonetaryDecimal.format_amount(total)

    async def get_erc20_allowance(self, token: TokenInfo, owner_address: str, spender_address: str) -> Decimal:
        result = await self._rpc(
            token.rpc_url,
            "eth_call",
            [{"to": token.token_address, "data": encode_allowance(owner_address, spender_address)}, "latest"],
        )
        return MonetaryDecimal.from_base_units(_hex_to_int(result), token.decimals)

    async def get_transaction_receipt(self, token: TokenInfo, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt dict, or None while the transaction is pending"""
        return await self._rpc(token.rpc_url, "eth_getTransactionReceipt", [tx_hash])

    @staticmethod
    def receipt_status(receipt: Dict[str, Any]) -> Optional[int]:
        status = receipt.get("status")
        if status is None:
            return None
        return _hex_to_int(status) if isinstance(status, str) else int(status)
