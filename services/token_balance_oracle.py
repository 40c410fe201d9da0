"""
Token Balance Oracle
Resolves a wallet's spendable token balance across one or more networks.

Every (symbol, network) pair is resolved independently: a pair that cannot be
resolved yields a sentinel string instead of aborting the others.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from config import Config
from services.chain_rpc import ChainRPCClient
from services.retry_service import RetryService
from services.token_registry import TokenRegistry
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

UNSUPPORTED_COMBINATION = "Unsupported combination"
ERROR_FETCHING_BALANCE = "Error fetching balance"
SENTINELS = (UNSUPPORTED_COMBINATION, ERROR_FETCHING_BALANCE)

# (symbol, chain type, canonical network) -> total LOCKED amount
ReservedAmounts = Mapping[Tuple[str, str, str], Decimal]
BalanceMap = Dict[str, Dict[str, str]]


def _as_list(value: Union[str, Sequence[str], None]) -> List[str]:
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    seen: List[str] = []
    for item in items:
        item = str(item).strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def is_sentinel(balance: Optional[str]) -> bool:
    return balance is None or balance in SENTINELS


class TokenBalanceOracle:
    """Read-only balance lookups with per-pair retries and optional lock netting"""

    def __init__(
        self,
        registry: TokenRegistry,
        rpc_client: Optional[ChainRPCClient] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.registry = registry
        self.rpc_client = rpc_client or ChainRPCClient()
        self.max_retries = Config.BALANCE_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = (
            Config.BALANCE_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        )
        self._sleep = sleep

    async def get_token_balance(
        self,
        symbols: Union[str, Sequence[str]],
        user_address: str,
        chain_type: str,
        blockchain_networks: Union[str, Sequence[str]],
        network_type: str,
        reserved: Optional[ReservedAmounts] = None,
    ) -> BalanceMap:
        """
        Balance for every requested (symbol, network) pair.

        Args:
            symbols: "USDC", "USDC,USDT" or ["USDC", "USDT"]
            user_address: Wallet address to query
            chain_type: "ethereum" or "solana"
            blockchain_networks: One network name or a list of them
            network_type: "MAINET" or "TESTNET"
            reserved: LOCKED totals to subtract; gross balance when omitted

        Returns:
            {symbol: {network: balance-or-sentinel}}
        """
        symbol_list = [s.upper() for s in _as_list(symbols)]
        network_list = _as_list(blockchain_networks)
        chain_type = (chain_type or "").strip().lower()

        pairs = [(symbol, network) for symbol in symbol_list for network in network_list]
        results = await asyncio.gather(*[
            self._resolve_pair(symbol, network, user_address, chain_type, network_type, reserved)
            for symbol, network in pairs
        ])

        balances: BalanceMap = {symbol: {} for symbol in symbol_list}
        for symbol, network_key, balance in results:
            balances[symbol][network_key] = balance
        return balances

    async def get_balance(
        self,
        symbol: str,
        user_address: str,
        chain_type: str,
        blockchain_network: str,
        network_type: str,
        reserved: Optional[ReservedAmounts] = None,
    ) -> str:
        """Single-pair convenience wrapper; returns a balance string or a sentinel"""
        balances = await self.get_token_balance(
            symbol, user_address, chain_type, blockchain_network, network_type, reserved
        )
        per_network = balances.get(symbol.strip().upper(), {})
        key = self.registry.canonical_network(blockchain_network) or blockchain_network.strip()
        return per_network.get(key, UNSUPPORTED_COMBINATION)

    async def _resolve_pair(
        self,
        symbol: str,
        network: str,
        user_address: str,
        chain_type: str,
        network_type: str,
        reserved: Optional[ReservedAmounts],
    ) -> Tuple[str, str, str]:
        canonical = self.registry.canonical_network(network)
        network_key = canonical or network
        token = self.registry.lookup(symbol, network_type, chain_type, network)
        if token is None:
            logger.warning(
                f"⚠️ BALANCE_UNSUPPORTED: {symbol} on {network} ({chain_type}, {network_type})"
            )
            return symbol, network_key, UNSUPPORTED_COMBINATION

        outcome = await RetryService.run_with_linear_backoff(
            lambda: self.rpc_client.get_token_balance(token, user_address),
            max_attempts=self.max_retries + 1,
            base_delay=self.retry_base_delay,
            operation=f"balance {symbol}/{network_key}",
            sleep=self._sleep,
        )
        if not outcome.succeeded:
            logger.error(
                f"❌ BALANCE_FETCH_FAILED: {symbol} on {network_key} after {outcome.attempts} attempts: "
                f"{outcome.last_error}"
            )
            return symbol, network_key, ERROR_FETCHING_BALANCE

        gross = outcome.value
        if not reserved:
            return symbol, network_key, gross

        locked = reserved.get((symbol, chain_type, network_key), Decimal("0"))
        if locked <= 0:
            return symbol, network_key, gross

        spendable = max(Decimal("0"), MonetaryDecimal.to_decimal(gross, "gross_balance") - locked)
        logger.info(
            f"🔒 BALANCE_NETTED: {symbol} on {network_key} gross={gross} locked={locked} spendable={spendable}"
        )
        return symbol, network_key, MonetaryDecimal.format_amount(spendable)
