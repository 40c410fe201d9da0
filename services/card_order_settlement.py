"""
Card Order Settlement
The single mutation point of a card order: after the fee is debited on chain,
consume the sub-user's funds lock, append the platform debit and advance the
user's card order status in one database transaction.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import CardOrderStatus, PlatformDebit, PlatformDebitStatus, PlatformDebitType, User
from services.crypto_debit_executor import DebitResult
from services.funds_lock_ledger import FundsLockLedger
from utils.atomic_transactions import async_atomic_transaction
from utils.exceptions import SettlementConflictError

logger = logging.getLogger(__name__)


def _conflict(reason: str, transaction_hash: str) -> SettlementConflictError:
    return SettlementConflictError(
        f"Order fee was debited (transaction {transaction_hash}) but the card order could not be applied: "
        f"{reason}. Support has been notified.",
        transaction_hash=transaction_hash,
        reason=reason,
    )


@dataclass(frozen=True)
class SettlementRequest:
    ordering_user_pk: int
    ordering_user_id: str
    debit: DebitResult
    funds_lock_id: Optional[int] = None


class CardOrderSettlement:
    """All-or-nothing persistence of a debited card order"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def settle(self, request: SettlementRequest) -> None:
        """
        Commit lock consumption, ledger entry and status change atomically

        Any exception rolls back all three writes and propagates. When the lock
        was no longer LOCKED or the user no longer not_ordered, nothing of the
        order is applied; the debit is still appended, since it happened on
        chain, and SettlementConflictError is raised for reconciliation.
        """
        debit = request.debit
        if debit.status != PlatformDebitStatus.COMPLETED or not debit.transaction_hash:
            raise ValueError("Only a completed debit with a transaction hash can be settled")

        try:
            async with self.session_factory() as session:
                async with async_atomic_transaction(session):
                    if request.funds_lock_id is not None:
                        await self._consume_lock(session, request.funds_lock_id, debit.transaction_hash)
                    await self._record_platform_debit(
                        session,
                        ordering_user_id=request.ordering_user_id,
                        debit=debit,
                        status=PlatformDebitStatus.COMPLETED,
                        transaction_hash=debit.transaction_hash,
                    )
                    await self._mark_card_ordered(session, request.ordering_user_pk, debit.transaction_hash)
        except SettlementConflictError as conflict:
            logger.critical(
                f"🚨 SETTLEMENT_CONFLICT: user={request.ordering_user_id} payer={debit.payer_user_id} "
                f"tx={debit.transaction_hash} amount={debit.amount} {debit.symbol} "
                f"network={debit.blockchain_network} lock={request.funds_lock_id}: {conflict.reason}"
            )
            await self._record_unsettled_debit(request)
            raise

        logger.info(
            f"✅ SETTLEMENT_COMMITTED: user={request.ordering_user_id} payer={debit.payer_user_id} "
            f"tx={debit.transaction_hash} lock={request.funds_lock_id}"
        )

    async def record_failed_debit(
        self,
        ordering_user_id: str,
        payer_user_id: str,
        symbol: str,
        amount: str,
        chain_type: str,
        blockchain_network: str,
        transaction_hash: str,
    ) -> None:
        """Append a failed debit for a broadcast transfer that reverted or was never confirmed"""
        failed = DebitResult(
            transaction_hash=transaction_hash,
            status=PlatformDebitStatus.FAILED,
            payer_user_id=payer_user_id,
            payer_address="",
            symbol=symbol,
            amount=amount,
            chain_type=chain_type,
            blockchain_network=blockchain_network,
            recipient_address="",
        )
        async with self.session_factory() as session:
            async with async_atomic_transaction(session):
                await self._record_platform_debit(
                    session,
                    ordering_user_id=ordering_user_id,
                    debit=failed,
                    status=PlatformDebitStatus.FAILED,
                    transaction_hash=transaction_hash,
                )
        logger.warning(f"⚠️ PLATFORM_DEBIT_FAILED_RECORDED: user={ordering_user_id} tx={transaction_hash}")

    async def _record_unsettled_debit(self, request: SettlementRequest) -> None:
        async with self.session_factory() as session:
            async with async_atomic_transaction(session):
                await self._record_platform_debit(
                    session,
                    ordering_user_id=request.ordering_user_id,
                    debit=request.debit,
                    status=PlatformDebitStatus.COMPLETED,
                    transaction_hash=request.debit.transaction_hash,
                )
        logger.warning(
            f"⚠️ PLATFORM_DEBIT_UNSETTLED_RECORDED: user={request.ordering_user_id} tx={request.debit.transaction_hash}"
        )

    async def _consume_lock(self, session: AsyncSession, lock_id: int, transaction_hash: str) -> None:
        if not await FundsLockLedger.consume(session, lock_id):
            raise _conflict(f"funds lock {lock_id} was no longer LOCKED", transaction_hash)

    async def _record_platform_debit(
        self,
        session: AsyncSession,
        ordering_user_id: str,
        debit: DebitResult,
        status: PlatformDebitStatus,
        transaction_hash: str,
    ) -> None:
        session.add(PlatformDebit(
            user_id=ordering_user_id,
            debited_user_id=debit.payer_user_id,
            symbol=debit.symbol,
            amount=debit.amount,
            transaction_hash=transaction_hash,
            chain_type=debit.chain_type,
            blockchain_network=debit.blockchain_network,
            transaction_type=PlatformDebitType.CARD_ORDER,
            status=status,
        ))
        await session.flush()

    async def _mark_card_ordered(self, session: AsyncSession, user_pk: int, transaction_hash: str) -> None:
        result = await session.execute(
            update(User)
            .where(and_(User.id == user_pk, User.card_order_status == CardOrderStatus.NOT_ORDERED))
            .values(card_order_status=CardOrderStatus.ORDERED)
        )
        if result.rowcount == 0:
            raise _conflict(f"user pk {user_pk} was no longer not_ordered", transaction_hash)
