"""
Card Order Service
Orchestrates one physical card order end to end:

    INIT -> BALANCE_VERIFIED -> AUTHORIZED -> (re-verify) -> FEE_DEBITED -> SETTLED

Every step runs strictly in that order under a per-user operation lock. No
database session or in-process lock is held across an external call; the
re-verification step immediately before the debit is what catches balance,
fee, funds lock and user changes made by concurrent requests. It ends by
renewing the operation lock, so an order whose lock expired and was taken
over never reaches the debit.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import CardOrderSettings, Config
from models import CardOrderStatus, OperationName
from services.card_order_settlement import CardOrderSettlement, SettlementRequest
from services.crypto_debit_executor import CryptoDebitExecutor, DebitResult
from services.funds_lock_ledger import FundsLockLedger, FundsLockSnapshot
from services.operation_lock_manager import OperationLockManager
from services.token_balance_oracle import (
    ERROR_FETCHING_BALANCE, UNSUPPORTED_COMBINATION, TokenBalanceOracle
)
from services.token_registry import TokenInfo, TokenRegistry
from services.user_repository import UserRepository, UserSnapshot
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    CardAlreadyOrderedError, CardOrderError, DebitExecutionError, DriftError,
    IdentityNotVerifiedError, InsufficientBalanceError, InternalServerError,
    NoLockedFundsError, OperationLockLostError, OrderTimeoutError, SettlementConflictError,
    SettlementPersistenceError, UserNotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardOrderResult:
    status: str
    message: str
    user_id: str
    transaction_hash: str
    card_order_status: CardOrderStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "userId": self.user_id,
            "transactionHash": self.transaction_hash,
            "cardOrderStatus": self.card_order_status.value,
        }


@dataclass(frozen=True)
class _OrderTerms:
    """Validated configuration and token for one order attempt"""
    network_type: str
    token: TokenInfo
    fee: Decimal
    recipient_address: Optional[str]

    @property
    def fee_str(self) -> str:
        return MonetaryDecimal.format_amount(self.fee)


def resolve_order_terms(settings: CardOrderSettings, registry: TokenRegistry, symbol: str,
                        chain_type: str, blockchain_network: str) -> _OrderTerms:
    """Validate network type, token support and fee; raises ValidationError"""
    network_type = settings.network_type
    if not network_type or network_type not in Config.SUPPORTED_NETWORK_TYPES:
        raise ValidationError("Network type is not properly configured")

    token = registry.lookup(symbol, network_type, chain_type, blockchain_network)
    if token is None:
        raise ValidationError(
            f"Unsupported token {symbol} for {chain_type} on {blockchain_network} ({network_type}). "
            f"Please select a supported token and network combination."
        )

    fee = settings.order_fee
    if fee is None or fee <= 0:
        raise ValidationError("Card order fee is not configured or is invalid")

    return _OrderTerms(
        network_type=network_type,
        token=token,
        fee=fee,
        recipient_address=settings.fee_recipient_address,
    )


class CardOrderService:
    """Coordinates balance oracle, funds lock ledger, debit executor and settlement"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        balance_oracle: TokenBalanceOracle,
        debit_executor: CryptoDebitExecutor,
        operation_locks: OperationLockManager,
        token_registry: TokenRegistry,
        settlement: Optional[CardOrderSettlement] = None,
        settings_provider: Callable[[], CardOrderSettings] = Config.card_order_settings,
    ):
        self.session_factory = session_factory
        self.balance_oracle = balance_oracle
        self.debit_executor = debit_executor
        self.operation_locks = operation_locks
        self.token_registry = token_registry
        self.settlement = settlement or CardOrderSettlement(session_factory)
        self.settings_provider = settings_provider

    async def order_card(self, user_id: str, symbol: str, chain_type: str, blockchain_network: str) -> CardOrderResult:
        """
        Order a physical card for user_id, paying the fee in symbol

        Raises:
            CardOrderError: every failure, already normalized to its HTTP class
        """
        symbol = (symbol or "").strip().upper()
        chain_type = (chain_type or "").strip().lower()
        logger.info(f"🃏 CARD_ORDER_STARTED: user={user_id} {symbol} {chain_type}/{blockchain_network}")

        try:
            terms = resolve_order_terms(
                self.settings_provider(), self.token_registry, symbol, chain_type, blockchain_network
            )
            async with self.operation_locks.hold(user_id, OperationName.CARD_ORDER) as owner_token:
                return await self._order_card_locked(user_id, symbol, chain_type, terms, owner_token)
        except CardOrderError as e:
            logger.warning(f"❌ CARD_ORDER_REJECTED: user={user_id} [{e.error_code}] {e.message}")
            raise
        except Exception as e:
            logger.exception(f"❌ CARD_ORDER_UNEXPECTED_ERROR: user={user_id}: {e}")
            raise InternalServerError(f"Failed to order card for user {user_id}: unexpected error") from e

    async def order_card_with_timeout(
        self,
        user_id: str,
        symbol: str,
        chain_type: str,
        blockchain_network: str,
        timeout_seconds: Optional[float] = None,
    ) -> CardOrderResult:
        """
        order_card bounded by a caller-side timeout

        A broadcast transfer cannot be recalled, so on timeout the order keeps
        running in the background and its outcome is logged.
        """
        timeout = timeout_seconds or Config.ORDER_TIMEOUT_SECONDS
        task = asyncio.ensure_future(self.order_card(user_id, symbol, chain_type, blockchain_network))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(lambda t: self._log_late_completion(user_id, t))
            logger.error(f"⏰ CARD_ORDER_TIMEOUT: user={user_id} still processing after {timeout}s")
            raise OrderTimeoutError(
                f"Card order for user {user_id} is still processing. Please check the order status later."
            )

    @staticmethod
    def _log_late_completion(user_id: str, task: "asyncio.Future") -> None:
        if task.cancelled():
            logger.warning(f"⚠️ CARD_ORDER_LATE_CANCELLED: user={user_id}")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ CARD_ORDER_LATE_FAILURE: user={user_id}: {error}")
        else:
            logger.info(f"✅ CARD_ORDER_LATE_SUCCESS: user={user_id} tx={task.result().transaction_hash}")

    async def _order_card_locked(self, user_id: str, symbol: str, chain_type: str,
                                 terms: _OrderTerms, owner_token: str) -> CardOrderResult:
        network = terms.token.blockchain_network

        # INIT -> BALANCE_VERIFIED
        user, parent = await self._load_user_and_parent(user_id)
        payer = parent or user
        wallet = await self.debit_executor.resolve_wallet(payer.user_id, chain_type)
        balance_str = await self._spendable_balance(symbol, wallet.address, chain_type, network, terms, payer, user)
        self._require_balance(balance_str, symbol, network, terms)
        logger.info(f"✅ CARD_ORDER_BALANCE_VERIFIED: user={user_id} payer={payer.user_id} balance={balance_str}")

        # BALANCE_VERIFIED -> AUTHORIZED
        if user.card_order_status != CardOrderStatus.NOT_ORDERED:
            raise CardAlreadyOrderedError(
                f"A card order for this user already exists with status: {user.card_order_status.value}. "
                f"Cannot place a new order.",
                card_order_status=user.card_order_status.value,
            )
        if parent is not None:
            lock = await self._find_sufficient_lock(parent, user, symbol, chain_type, network, terms.fee)
            if lock is None:
                raise NoLockedFundsError(
                    f"No locked funds found for {symbol} on {network} of type SUBUSER_CARD_ORDER for this "
                    f"sub-user. Main user must lock funds before a card can be ordered."
                )
        logger.info(f"✅ CARD_ORDER_AUTHORIZED: user={user_id} sub_user={parent is not None}")

        # Re-verification immediately before the debit
        terms, lock = await self._reverify(user_id, user, parent, symbol, chain_type, wallet.address, terms)
        if not terms.recipient_address:
            raise ValidationError("Recipient address for card order fee is not configured")
        await self._confirm_lock_held(user_id, owner_token)

        # AUTHORIZED -> FEE_DEBITED
        debit = await self._debit_fee(user_id, payer, symbol, chain_type, network, terms)

        # FEE_DEBITED -> SETTLED
        request = SettlementRequest(
            ordering_user_pk=user.id,
            ordering_user_id=user.user_id,
            debit=debit,
            funds_lock_id=lock.id if lock is not None else None,
        )
        try:
            await self.settlement.settle(request)
        except SettlementConflictError:
            raise
        except Exception as e:
            logger.critical(
                f"🚨 SETTLEMENT_FAILED_AFTER_DEBIT: user={user_id} payer={payer.user_id} "
                f"tx={debit.transaction_hash} amount={debit.amount} {debit.symbol} "
                f"network={debit.blockchain_network} lock={request.funds_lock_id}: {e}"
            )
            raise SettlementPersistenceError(
                f"Order fee was debited (transaction {debit.transaction_hash}) but the card order could not "
                f"be recorded for user {user_id}. Support has been notified.",
                transaction_hash=debit.transaction_hash,
            ) from e

        async with self.session_factory() as session:
            updated = await UserRepository.get_by_user_id(session, user_id)
        if updated is None:
            raise UserNotFoundError("User not found after processing card order")

        logger.info(f"🎉 CARD_ORDER_COMPLETED: user={user_id} tx={debit.transaction_hash}")
        return CardOrderResult(
            status="success",
            message=f"Card ordered successfully for user {user_id}",
            user_id=user_id,
            transaction_hash=debit.transaction_hash,
            card_order_status=updated.card_order_status,
        )

    async def _load_user_and_parent(self, user_id: str) -> Tuple[UserSnapshot, Optional[UserSnapshot]]:
        async with self.session_factory() as session:
            user = await UserRepository.get_by_user_id(session, user_id)
            if user is None:
                raise UserNotFoundError("User not found")
            parent = await UserRepository.get_parent(session, user)

        if not user.is_identity_verified:
            raise IdentityNotVerifiedError(
                "User identity verification is not complete. Please complete verification before ordering a card."
            )
        if user.is_sub_user:
            if parent is None:
                raise ValidationError("Main user not found for this sub-user")
            if parent.is_sub_user or not parent.is_main_user:
                raise ValidationError("The parent of this sub-user is not a main user")
        return user, parent

    async def _spendable_balance(self, symbol: str, address: str, chain_type: str, network: str,
                                 terms: _OrderTerms, payer: UserSnapshot, user: UserSnapshot) -> str:
        # The ordering sub-user's own reservation is what pays the fee
        exclude = user.id if user.id != payer.id else None
        async with self.session_factory() as session:
            reserved = await FundsLockLedger.reserved_totals(session, payer.id, exclude_sub_user_pk=exclude)
        return await self.balance_oracle.get_balance(
            symbol, address, chain_type, network, terms.network_type, reserved=reserved
        )

    @staticmethod
    def _require_balance(balance_str: str, symbol: str, network: str, terms: _OrderTerms) -> None:
        if balance_str == UNSUPPORTED_COMBINATION:
            raise ValidationError(
                f"Token {symbol} is not supported on {network}. "
                f"Please select a supported token and network combination."
            )
        if balance_str == ERROR_FETCHING_BALANCE:
            raise ValidationError(f"Unable to fetch balance for {symbol} on {network}. Please try again later.")

        balance = MonetaryDecimal.parse_balance(balance_str)
        if balance is None or balance < terms.fee:
            raise InsufficientBalanceError(
                f"Insufficient balance for {symbol} on {network}. Required: {terms.fee_str}, "
                f"Available: {balance_str}. Please ensure you have enough funds to cover the card order fee.",
                required=terms.fee,
                available=balance_str,
            )

    async def _find_sufficient_lock(self, parent: UserSnapshot, user: UserSnapshot, symbol: str,
                                    chain_type: str, network: str, fee: Decimal) -> Optional[FundsLockSnapshot]:
        async with self.session_factory() as session:
            locks = await FundsLockLedger.find_active_locks(session, parent.id, user.id, symbol, chain_type, network)
        return FundsLockLedger.find_sufficient_lock(locks, fee)

    async def _reverify(self, user_id: str, user: UserSnapshot, parent: Optional[UserSnapshot], symbol: str,
                        chain_type: str, address: str,
                        terms: _OrderTerms) -> Tuple[_OrderTerms, Optional[FundsLockSnapshot]]:
        network = terms.token.blockchain_network

        # Fee and network configuration
        settings = self.settings_provider()
        if settings.order_fee is None or settings.order_fee <= 0:
            raise ValidationError("Card order fee configuration changed during processing and is now invalid.")
        if settings.network_type != terms.network_type:
            raise DriftError(
                "Network configuration changed during processing. Please restart the order process.",
                what_changed=DriftError.FEE,
            )
        if settings.order_fee != terms.fee:
            raise DriftError(
                f"Order fee changed during processing for {symbol} on {network}. "
                f"New required amount: {MonetaryDecimal.format_amount(settings.order_fee)}, "
                f"previous: {terms.fee_str}. Please restart the order process.",
                what_changed=DriftError.FEE,
            )
        terms = _OrderTerms(
            network_type=terms.network_type,
            token=terms.token,
            fee=terms.fee,
            recipient_address=settings.fee_recipient_address,
        )

        # User status and hierarchy
        async with self.session_factory() as session:
            current = await UserRepository.get_by_user_id(session, user_id)
        if current is None:
            raise UserNotFoundError("User not found during re-check")
        if user.is_sub_user and not current.is_sub_user:
            raise DriftError(
                "User status changed during processing. Sub-user has been upgraded to main user. "
                "Please restart the order process.",
                what_changed=DriftError.USER_STATUS,
            )
        if current.parent_id != user.parent_id:
            raise DriftError(
                "User status changed during processing. Please restart the order process.",
                what_changed=DriftError.USER_STATUS,
            )
        if current.card_order_status != CardOrderStatus.NOT_ORDERED:
            raise DriftError(
                f"Card order status changed during processing to {current.card_order_status.value}.",
                what_changed=DriftError.USER_STATUS,
            )

        # Spendable balance
        payer = parent or user
        balance_str = await self._spendable_balance(symbol, address, chain_type, network, terms, payer, user)
        balance = MonetaryDecimal.parse_balance(balance_str)
        if balance is None or balance < terms.fee:
            raise DriftError(
                f"Balance changed during processing for {symbol} on {network}. Required: {terms.fee_str}, "
                f"Available now: {balance_str}. Please ensure sufficient funds are available.",
                what_changed=DriftError.BALANCE,
            )

        # Funds lock
        lock = None
        if parent is not None:
            lock = await self._find_sufficient_lock(parent, user, symbol, chain_type, network, terms.fee)
            if lock is None:
                raise DriftError(
                    f"Funds lock status changed during processing for {symbol} on {network} of type "
                    f"SUBUSER_CARD_ORDER. Locked funds are no longer available. "
                    f"Please ensure funds are locked by the main user.",
                    what_changed=DriftError.FUNDS_LOCK,
                )

        logger.info(f"✅ CARD_ORDER_REVERIFIED: user={user_id} balance={balance_str} lock={lock.id if lock else None}")
        return terms, lock

    async def _confirm_lock_held(self, user_id: str, owner_token: str) -> None:
        """Last gate before the debit: the operation lock must still be ours, renewed for the debit"""
        if not await self.operation_locks.renew(user_id, OperationName.CARD_ORDER, owner_token):
            raise OperationLockLostError(
                "The card order took too long and another request for this user took over. "
                "No fee was debited. Please check the order status before trying again.",
                user_id=user_id,
                operation_name=OperationName.CARD_ORDER.value,
            )

    async def _debit_fee(self, user_id: str, payer: UserSnapshot, symbol: str, chain_type: str,
                         network: str, terms: _OrderTerms) -> DebitResult:
        try:
            return await self.debit_executor.debit(
                payer_user_id=payer.user_id,
                symbol=symbol,
                network_type=terms.network_type,
                amount=terms.fee_str,
                recipient_address=terms.recipient_address,
                chain_type=chain_type,
                blockchain_network=network,
                spender_address=None,
            )
        except DebitExecutionError as e:
            if e.transaction_hash:
                await self._record_failed_debit(user_id, payer, symbol, chain_type, network, terms, e.transaction_hash)
            raise DebitExecutionError(
                f"Failed to debit order fee for user {user_id}: {e.message}",
                provider_message=e.provider_message,
                transaction_hash=e.transaction_hash,
            ) from e

    async def _record_failed_debit(self, user_id: str, payer: UserSnapshot, symbol: str, chain_type: str,
                                   network: str, terms: _OrderTerms, transaction_hash: str) -> None:
        try:
            await self.settlement.record_failed_debit(
                ordering_user_id=user_id,
                payer_user_id=payer.user_id,
                symbol=symbol,
                amount=terms.fee_str,
                chain_type=chain_type,
                blockchain_network=network,
                transaction_hash=transaction_hash,
            )
        except Exception as record_error:
            logger.critical(
                f"🚨 FAILED_DEBIT_NOT_RECORDED: user={user_id} payer={payer.user_id} tx={transaction_hash}: "
                f"{record_error}"
            )
