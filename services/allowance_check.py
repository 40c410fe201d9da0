"""
ERC20 allowance polling before a spender pulls funds from a user's wallet

Used by CryptoDebitExecutor.debit(spender_address=...). Direct fee transfers
signed by the payer's own wallet need no approval and skip it.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from config import Config
from services.chain_rpc import ChainRPCClient, ChainRPCError
from services.retry_service import RetryService
from services.token_registry import TokenInfo
from utils.exceptions import DebitExecutionError

logger = logging.getLogger(__name__)


class AllowanceChecker:
    """Waits until owner has approved spender for at least the required amount"""

    def __init__(
        self,
        rpc_client: ChainRPCClient,
        max_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.rpc_client = rpc_client
        self.max_attempts = max_attempts or Config.ALLOWANCE_MAX_ATTEMPTS
        self.poll_interval = Config.ALLOWANCE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self._sleep = sleep

    async def wait_for_allowance(
        self,
        token: TokenInfo,
        owner_address: str,
        spender_address: str,
        required_amount: Decimal,
    ) -> Decimal:
        """
        Poll allowance(owner, spender) until it covers required_amount

        Returns:
            The allowance observed on the successful attempt

        Raises:
            DebitExecutionError: still short, or unreadable, after max_attempts
        """
        outcome = await RetryService.run_with_linear_backoff(
            lambda: self.rpc_client.get_erc20_allowance(token, owner_address, spender_address),
            max_attempts=self.max_attempts,
            base_delay=self.poll_interval,
            operation=f"allowance {token.symbol}/{token.blockchain_network}",
            should_retry=lambda allowance: allowance < required_amount,
            exceptions=(ChainRPCError,),
            sleep=self._sleep,
        )

        if outcome.succeeded:
            logger.info(
                f"✅ ALLOWANCE_CONFIRMED: {token.symbol} on {token.blockchain_network} "
                f"allowance={outcome.value} required={required_amount}"
            )
            return outcome.value

        if outcome.last_error is not None:
            message = (
                f"Failed to verify token allowance due to contract error on attempt {outcome.attempts}."
            )
        else:
            message = (
                f"Insufficient token allowance after {outcome.attempts} attempts. "
                f"Required: {required_amount}, Found: {outcome.value}"
            )
        logger.error(f"❌ ALLOWANCE_CHECK_FAILED: {message}")
        raise DebitExecutionError(message, provider_message=str(outcome.last_error) if outcome.last_error else None)
