"""
Sub-User Funds Service
Lets a main user reserve the card order fee for a sub-user ahead of the
sub-user's own card order, and manage those reservations.
"""

import logging
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import CardOrderSettings, Config
from models import FundsLockType, OperationName
from services.card_order_service import resolve_order_terms
from services.crypto_debit_executor import CryptoDebitExecutor
from services.funds_lock_ledger import FundsLockLedger, FundsLockSnapshot
from services.operation_lock_manager import OperationLockManager
from services.token_balance_oracle import ERROR_FETCHING_BALANCE, UNSUPPORTED_COMBINATION, TokenBalanceOracle
from services.token_registry import TokenRegistry
from services.user_repository import UserRepository, UserSnapshot
from utils.atomic_transactions import async_atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    DriftError, InsufficientBalanceError, NotFoundError, UserNotFoundError, ValidationError
)

logger = logging.getLogger(__name__)


class SubUserFundsService:
    """Creates, attaches and releases sub-user card order funds locks"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        balance_oracle: TokenBalanceOracle,
        debit_executor: CryptoDebitExecutor,
        operation_locks: OperationLockManager,
        token_registry: TokenRegistry,
        settings_provider: Callable[[], CardOrderSettings] = Config.card_order_settings,
    ):
        self.session_factory = session_factory
        self.balance_oracle = balance_oracle
        self.debit_executor = debit_executor
        self.operation_locks = operation_locks
        self.token_registry = token_registry
        self.settings_provider = settings_provider

    async def lock_card_order_funds(
        self,
        main_user_id: str,
        symbol: str,
        chain_type: str,
        blockchain_network: str,
        sub_user_id: Optional[str] = None,
    ) -> FundsLockSnapshot:
        """
        Reserve the card order fee from main_user_id's spendable balance

        The sub-user may not exist yet; its lock is attached later by
        attach_sub_user. The balance is checked once before and once inside
        the transaction that creates the lock.
        """
        symbol = (symbol or "").strip().upper()
        chain_type = (chain_type or "").strip().lower()
        terms = resolve_order_terms(self.settings_provider(), self.token_registry, symbol, chain_type, blockchain_network)
        network = terms.token.blockchain_network

        async with self.operation_locks.hold(main_user_id, OperationName.LOCK_SUB_USER_FUNDS):
            main_user, sub_user = await self._load_users(main_user_id, sub_user_id)

            wallet = await self.debit_executor.resolve_wallet(main_user.user_id, chain_type)
            gross_str = await self.balance_oracle.get_balance(
                symbol, wallet.address, chain_type, network, terms.network_type
            )
            if gross_str in (UNSUPPORTED_COMBINATION, ERROR_FETCHING_BALANCE):
                raise ValidationError(f"Unable to fetch balance for {symbol} on {network}. Please try again later.")
            gross = MonetaryDecimal.to_decimal(gross_str, "gross_balance")

            async with self.session_factory() as session:
                reserved = await FundsLockLedger.reserved_totals(session, main_user.id)
            available = gross - reserved.get((symbol, chain_type, network), Decimal("0"))
            if available < terms.fee:
                available_str = MonetaryDecimal.format_amount(max(available, Decimal("0")))
                raise InsufficientBalanceError(
                    f"Insufficient balance for {symbol} on {network}. Required: {terms.fee_str}, "
                    f"Available: {available_str}. Existing locks are already deducted.",
                    required=terms.fee,
                    available=available_str,
                )

            async with self.session_factory() as session:
                async with async_atomic_transaction(session):
                    reserved_now = await FundsLockLedger.reserved_totals(session, main_user.id)
                    available_now = gross - reserved_now.get((symbol, chain_type, network), Decimal("0"))
                    if available_now < terms.fee:
                        available_str = MonetaryDecimal.format_amount(max(available_now, Decimal("0")))
                        raise DriftError(
                            f"Balance changed during processing for {symbol} on {network}. "
                            f"Required: {terms.fee_str}, Available now: {available_str}.",
                            what_changed=DriftError.BALANCE,
                        )
                    lock = await FundsLockLedger.create_lock(
                        session,
                        owner_pk=main_user.id,
                        amount=terms.fee,
                        symbol=symbol,
                        chain=chain_type,
                        blockchain_network=network,
                        lock_type=FundsLockType.SUBUSER_CARD_ORDER,
                        sub_user_pk=sub_user.id if sub_user else None,
                    )

        logger.info(
            f"🔒 SUB_USER_FUNDS_LOCKED: main={main_user_id} sub={sub_user_id} "
            f"{lock.amount_locked} {symbol} on {network} lock={lock.id}"
        )
        return lock

    async def attach_sub_user(self, main_user_id: str, sub_user_id: str) -> int:
        """Point the main user's unassigned sub-user locks at a newly created sub-user"""
        main_user, sub_user = await self._load_users(main_user_id, sub_user_id)
        async with self.session_factory() as session:
            async with async_atomic_transaction(session):
                return await FundsLockLedger.attach_sub_user(session, main_user.id, sub_user.id)

    async def release_lock(self, main_user_id: str, lock_id: int) -> None:
        """Cancel a reservation that has not been consumed by an order"""
        async with self.session_factory() as session:
            main_user = await UserRepository.get_by_user_id(session, main_user_id)
            if main_user is None:
                raise UserNotFoundError("User not found")
            async with async_atomic_transaction(session):
                released = await FundsLockLedger.release(session, lock_id, main_user.id)
        if not released:
            raise NotFoundError(f"No active funds lock {lock_id} found for this user")

    async def _load_users(self, main_user_id: str, sub_user_id: Optional[str]):
        async with self.session_factory() as session:
            main_user = await UserRepository.get_by_user_id(session, main_user_id)
            sub_user: Optional[UserSnapshot] = None
            if sub_user_id is not None:
                sub_user = await UserRepository.get_by_user_id(session, sub_user_id)

        if main_user is None:
            raise UserNotFoundError("User not found")
        if main_user.is_sub_user:
            raise ValidationError("Only a main user can lock funds for a sub-user")
        if sub_user_id is not None:
            if sub_user is None:
                raise UserNotFoundError("Sub-user not found")
            if sub_user.parent_id != main_user.id:
                raise ValidationError("Sub-user does not belong to this main user")
        return main_user, sub_user
