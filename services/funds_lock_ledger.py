"""
Funds Lock Ledger
Tracks token amounts a main user has reserved (LOCKED) for a sub-user's card
order until the order settles or the reservation is released (FREE).

Reads return immutable FundsLockSnapshot values; the only mutations are
create_lock, attach_sub_user, release and consume, and consume is only legal
inside the settlement transaction.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import FundsLock, FundsLockStatus, FundsLockType
from utils.atomic_transactions import in_atomic_transaction
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundsLockSnapshot:
    id: int
    amount_locked: Decimal
    token_symbol: str
    chain: str
    blockchain_network: str
    status: FundsLockStatus
    type: FundsLockType
    owner_id: int
    sub_user_id: Optional[int]

    @classmethod
    def from_model(cls, lock: FundsLock) -> "FundsLockSnapshot":
        return cls(
            id=lock.id,
            amount_locked=MonetaryDecimal.to_decimal(lock.amount_locked, "amount_locked"),
            token_symbol=lock.token_symbol_locked,
            chain=lock.chain,
            blockchain_network=lock.blockchain_network,
            status=lock.status,
            type=lock.type,
            owner_id=lock.user_id,
            sub_user_id=lock.sub_user_id,
        )


class FundsLockLedger:
    """Funds lock queries and state transitions"""

    @staticmethod
    async def find_active_locks(
        session: AsyncSession,
        parent_user_pk: int,
        sub_user_pk: int,
        symbol: str,
        chain: str,
        blockchain_network: str,
        lock_type: FundsLockType = FundsLockType.SUBUSER_CARD_ORDER,
    ) -> List[FundsLockSnapshot]:
        """All LOCKED rows matching the exact (parent, sub-user, token, chain, network) tuple"""
        result = await session.execute(
            select(FundsLock)
            .where(and_(
                FundsLock.user_id == parent_user_pk,
                FundsLock.sub_user_id == sub_user_pk,
                FundsLock.token_symbol_locked == symbol.strip().upper(),
                FundsLock.chain == chain,
                FundsLock.blockchain_network == blockchain_network,
                FundsLock.status == FundsLockStatus.LOCKED,
                FundsLock.type == lock_type,
            ))
            .order_by(FundsLock.id)
        )
        return [FundsLockSnapshot.from_model(lock) for lock in result.scalars().all()]

    @staticmethod
    def find_sufficient_lock(locks: Iterable[FundsLockSnapshot], required_amount: Decimal) -> Optional[FundsLockSnapshot]:
        """First lock whose amount covers required_amount (ties are sufficient)"""
        for lock in locks:
            if lock.amount_locked >= required_amount:
                return lock
        return None

    @staticmethod
    def has_sufficient_lock(locks: Iterable[FundsLockSnapshot], required_amount: Decimal) -> bool:
        return FundsLockLedger.find_sufficient_lock(locks, required_amount) is not None

    @staticmethod
    async def consume(session: AsyncSession, lock_id: int) -> bool:
        """
        Flip a lock LOCKED -> FREE as part of the settlement transaction

        Conditional on the row still being LOCKED, so a lock consumed by a
        concurrent settlement is never consumed twice. Returns False when no
        row changed.
        """
        if not in_atomic_transaction(session):
            raise RuntimeError("FundsLockLedger.consume must run inside the settlement transaction")

        result = await session.execute(
            update(FundsLock)
            .where(and_(FundsLock.id == lock_id, FundsLock.status == FundsLockStatus.LOCKED))
            .values(status=FundsLockStatus.FREE)
        )
        consumed = result.rowcount > 0
        if consumed:
            logger.info(f"🔓 FUNDS_LOCK_CONSUMED: lock {lock_id}")
        return consumed

    @staticmethod
    async def release(session: AsyncSession, lock_id: int, owner_pk: int) -> bool:
        """Cancel a reservation; only the locking user can release it"""
        result = await session.execute(
            update(FundsLock)
            .where(and_(
                FundsLock.id == lock_id,
                FundsLock.user_id == owner_pk,
                FundsLock.status == FundsLockStatus.LOCKED,
            ))
            .values(status=FundsLockStatus.FREE)
        )
        released = result.rowcount > 0
        if released:
            logger.info(f"🔓 FUNDS_LOCK_RELEASED: lock {lock_id} by owner {owner_pk}")
        else:
            logger.warning(f"⚠️ FUNDS_LOCK_RELEASE_NOOP: lock {lock_id} not LOCKED or not owned by {owner_pk}")
        return released

    @staticmethod
    async def reserved_totals(
        session: AsyncSession,
        owner_pk: int,
        exclude_sub_user_pk: Optional[int] = None,
    ) -> Dict[Tuple[str, str, str], Decimal]:
        """
        Sum of the owner's LOCKED amounts per (symbol, chain, network)

        Locks earmarked for exclude_sub_user_pk are left out: when that
        sub-user orders, its own reservation is what pays the fee.
        """
        query = select(FundsLock).where(and_(
            FundsLock.user_id == owner_pk,
            FundsLock.status == FundsLockStatus.LOCKED,
        ))
        result = await session.execute(query)

        totals: Dict[Tuple[str, str, str], Decimal] = defaultdict(lambda: Decimal("0"))
        for lock in result.scalars().all():
            if exclude_sub_user_pk is not None and lock.sub_user_id == exclude_sub_user_pk:
                continue
            key = (lock.token_symbol_locked, lock.chain, lock.blockchain_network)
            totals[key] += MonetaryDecimal.to_decimal(lock.amount_locked, "amount_locked")
        return dict(totals)

    @staticmethod
    async def create_lock(
        session: AsyncSession,
        owner_pk: int,
        amount: Decimal,
        symbol: str,
        chain: str,
        blockchain_network: str,
        lock_type: FundsLockType,
        sub_user_pk: Optional[int] = None,
    ) -> FundsLockSnapshot:
        lock = FundsLock(
            amount_locked=MonetaryDecimal.quantize_lock(amount),
            token_symbol_locked=symbol.strip().upper(),
            chain=chain,
            blockchain_network=blockchain_network,
            status=FundsLockStatus.LOCKED,
            type=lock_type,
            user_id=owner_pk,
            sub_user_id=sub_user_pk,
        )
        session.add(lock)
        await session.flush()
        logger.info(
            f"🔒 FUNDS_LOCK_CREATED: lock {lock.id} {lock.amount_locked} {lock.token_symbol_locked} "
            f"on {blockchain_network} owner={owner_pk} sub_user={sub_user_pk}"
        )
        return FundsLockSnapshot.from_model(lock)

    @staticmethod
    async def attach_sub_user(session: AsyncSession, owner_pk: int, sub_user_pk: int) -> int:
        """Assign a newly created sub-user to the owner's unassigned sub-user locks"""
        result = await session.execute(
            update(FundsLock)
            .where(and_(
                FundsLock.user_id == owner_pk,
                FundsLock.sub_user_id.is_(None),
                FundsLock.type == FundsLockType.SUBUSER_CARD_ORDER,
                FundsLock.status == FundsLockStatus.LOCKED,
            ))
            .values(sub_user_id=sub_user_pk)
        )
        if result.rowcount:
            logger.info(f"🔗 FUNDS_LOCK_ATTACHED: {result.rowcount} locks of owner {owner_pk} -> sub-user {sub_user_pk}")
        return result.rowcount
