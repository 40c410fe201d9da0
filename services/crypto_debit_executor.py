"""
Crypto Debit Executor
Charges a fee on chain: resolves the payer's custodial wallet, submits an
ERC20 transfer to the platform recipient and waits for the receipt.

A debit is only reported as completed with a non-empty transaction hash and
a successful receipt; every other outcome raises.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from config import Config
from models import PlatformDebitStatus
from services.allowance_check import AllowanceChecker
from services.chain_rpc import ChainRPCClient, ChainRPCError, encode_transfer
from services.custody_provider import CustodyWallet, PrivyCustodyClient
from services.retry_service import RetryService
from services.token_registry import TokenRegistry
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import DebitExecutionError, ValidationError, WalletNotFoundError
from utils.provider_results import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DebitResult:
    transaction_hash: str
    status: PlatformDebitStatus
    payer_user_id: str
    payer_address: str
    symbol: str
    amount: str
    chain_type: str
    blockchain_network: str
    recipient_address: str


class CryptoDebitExecutor:
    """Drives the custody provider through one fee transfer"""

    def __init__(
        self,
        custody_client: PrivyCustodyClient,
        token_registry: TokenRegistry,
        rpc_client: Optional[ChainRPCClient] = None,
        allowance_checker: Optional[AllowanceChecker] = None,
        confirmation_attempts: Optional[int] = None,
        confirmation_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.custody_client = custody_client
        self.token_registry = token_registry
        self.rpc_client = rpc_client or ChainRPCClient()
        self.allowance_checker = allowance_checker or AllowanceChecker(self.rpc_client, sleep=sleep)
        self.confirmation_attempts = confirmation_attempts or Config.CONFIRMATION_MAX_ATTEMPTS
        self.confirmation_interval = (
            Config.CONFIRMATION_POLL_INTERVAL_SECONDS if confirmation_interval is None else confirmation_interval
        )
        self._sleep = sleep

    async def resolve_wallet(self, user_id: str, chain_type: str) -> CustodyWallet:
        """First usable custodial wallet of user_id on chain_type"""
        result = await self.custody_client.get_wallets(user_id, chain_type)
        if isinstance(result, ProviderError):
            raise DebitExecutionError(
                f"Failed to fetch {chain_type} wallet for user {user_id}: {result.message}",
                provider_message=result.message,
            )
        if not result.data:
            logger.error(f"❌ WALLET_NOT_FOUND: no {chain_type} wallet for user {user_id}")
            raise WalletNotFoundError(f"No {chain_type} wallet found for user with ID {user_id}")

        wallet = next((w for w in result.data if w.id and w.address), None)
        if wallet is None:
            logger.error(f"❌ WALLET_NOT_FOUND: no usable {chain_type} wallet for user {user_id}")
            raise WalletNotFoundError(f"No valid {chain_type} wallet found for user with ID {user_id}")
        return wallet

    async def debit(
        self,
        payer_user_id: str,
        symbol: str,
        network_type: str,
        amount: str,
        recipient_address: str,
        chain_type: str,
        blockchain_network: str,
        spender_address: Optional[str] = None,
    ) -> DebitResult:
        """
        Transfer amount of symbol from the payer's wallet to recipient_address

        Args:
            payer_user_id: Custody user id whose wallet pays
            symbol: Token symbol, e.g. "USDC"
            network_type: "MAINET" or "TESTNET"
            amount: Decimal string in token units
            recipient_address: Platform settlement address
            chain_type: "ethereum" (Solana debits are not supported)
            blockchain_network: e.g. "Base"
            spender_address: Pull-based debits only (a gateway contract moving
                the funds): wait until the payer has approved this spender for
                amount. The card order fee is a direct transfer signed by the
                payer's wallet, so CardOrderService leaves it None.

        Raises:
            WalletNotFoundError: before any on-chain action
            ValidationError: unknown token or malformed amount/recipient
            DebitExecutionError: submission, hash or confirmation failure
        """
        wallet = await self.resolve_wallet(payer_user_id, chain_type)

        token = self.token_registry.lookup(symbol, network_type, chain_type, blockchain_network)
        if token is None:
            raise ValidationError(f"Token {symbol} not found for network {network_type} on {blockchain_network}")
        if not token.is_evm:
            raise DebitExecutionError(
                f"On-chain fee debit is not supported for {chain_type} ({blockchain_network})"
            )

        try:
            amount_decimal = MonetaryDecimal.to_decimal(amount, "debit_amount")
        except ValueError as e:
            raise ValidationError(f"Invalid debit amount: {amount}") from e
        base_units = MonetaryDecimal.to_base_units(amount_decimal, token.decimals)
        if base_units <= 0:
            raise ValidationError(f"Debit amount must be positive: {amount}")

        try:
            calldata = encode_transfer(recipient_address, base_units)
        except ChainRPCError as e:
            raise ValidationError(f"Invalid recipient address for card order fee: {recipient_address}") from e

        if spender_address:
            await self.allowance_checker.wait_for_allowance(token, wallet.address, spender_address, amount_decimal)

        logger.info(
            f"💸 DEBIT_SUBMITTING: {amount} {token.symbol} on {token.blockchain_network} "
            f"payer={payer_user_id} wallet={wallet.id}"
        )
        sent = await self.custody_client.send_transaction(
            wallet.id,
            {"to": token.token_address, "data": calldata},
            token.chain_id,
        )
        if isinstance(sent, ProviderError):
            logger.error(f"❌ DEBIT_SUBMIT_FAILED: payer={payer_user_id} status={sent.status}: {sent.message}")
            raise DebitExecutionError(
                f"Failed to send transaction for user {payer_user_id}: {sent.message}",
                provider_message=sent.message,
            )

        tx_hash = (sent.data.hash or "").strip()
        if not tx_hash:
            logger.error(f"❌ DEBIT_EMPTY_HASH: provider returned no transaction hash for {payer_user_id}")
            raise DebitExecutionError(f"Transaction hash not received for user {payer_user_id}")

        await self._wait_for_confirmation(token, tx_hash, payer_user_id)

        logger.info(f"✅ DEBIT_CONFIRMED: {amount} {token.symbol} payer={payer_user_id} tx={tx_hash}")
        return DebitResult(
            transaction_hash=tx_hash,
            status=PlatformDebitStatus.COMPLETED,
            payer_user_id=payer_user_id,
            payer_address=wallet.address,
            symbol=token.symbol,
            amount=MonetaryDecimal.format_amount(amount_decimal),
            chain_type=token.chain_type,
            blockchain_network=token.blockchain_network,
            recipient_address=recipient_address,
        )

    async def _wait_for_confirmation(self, token, tx_hash: str, payer_user_id: str) -> None:
        # The transfer is already broadcast: every failure from here on must carry tx_hash
        try:
            outcome = await RetryService.run_with_linear_backoff(
                lambda: self.rpc_client.get_transaction_receipt(token, tx_hash),
                max_attempts=self.confirmation_attempts,
                base_delay=self.confirmation_interval,
                operation=f"receipt {tx_hash}",
                should_retry=lambda receipt: receipt is None,
                exceptions=(ChainRPCError,),
                sleep=self._sleep,
            )
            status = ChainRPCClient.receipt_status(outcome.value) if outcome.succeeded else None
        except Exception as e:
            logger.error(f"❌ DEBIT_CONFIRMATION_ERROR: tx={tx_hash} payer={payer_user_id}: {e!r}")
            raise DebitExecutionError(
                f"Transaction confirmation failed or timed out: {e}",
                provider_message=str(e),
                transaction_hash=tx_hash,
            ) from e

        if not outcome.succeeded:
            reason = outcome.last_error or "receipt not available"
            logger.error(f"❌ DEBIT_UNCONFIRMED: tx={tx_hash} payer={payer_user_id}: {reason}")
            raise DebitExecutionError(
                f"Transaction confirmation failed or timed out: {reason}",
                provider_message=str(reason),
                transaction_hash=tx_hash,
            )

        if status != 1:
            logger.error(f"❌ DEBIT_REVERTED: tx={tx_hash} payer={payer_user_id}")
            raise DebitExecutionError(
                f"Transfer transaction failed for user {payer_user_id}: {tx_hash}",
                transaction_hash=tx_hash,
            )
