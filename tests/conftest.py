"""
Shared fixtures for the card order engine test suites

1. Per-test SQLite database (aiosqlite) with the full schema
2. test_data_factory for users and funds locks
3. Fake chain RPC and custody collaborators with no network access
4. Fully wired CardOrderService / SubUserFundsService
"""

import logging
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from models import (
    Base, CardOrderStatus, FundsLock, FundsLockStatus, FundsLockType, OperationLock, PlatformDebit, User
)
from services.card_order_service import CardOrderService
from services.crypto_debit_executor import CryptoDebitExecutor
from services.custody_provider import CustodyWallet, SentTransaction
from services.operation_lock_manager import OperationLockManager
from services.sub_user_funds_service import SubUserFundsService
from services.token_balance_oracle import TokenBalanceOracle
from services.token_registry import TokenRegistry
from tests.card_order_test_foundation import MAIN_WALLET_ADDRESS, SUB_WALLET_ADDRESS, TX_HASH, make_settings, no_sleep
from utils.provider_results import Ok

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'card_orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)


class TestDataFactory:
    """Creates users and funds locks directly in the test database"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def create_user(
        self,
        user_id: str,
        parent: Optional[User] = None,
        card_order_status: CardOrderStatus = CardOrderStatus.NOT_ORDERED,
        is_identity_verified: bool = True,
    ) -> User:
        async with self.session_factory() as session:
            user = User(
                user_id=user_id,
                parent_user_id=parent.id if parent else None,
                is_main_user=parent is None,
                card_order_status=card_order_status,
                is_identity_verified=is_identity_verified,
            )
            session.add(user)
            await session.commit()
            return user

    async def create_lock(
        self,
        owner: User,
        amount: str,
        sub_user: Optional[User] = None,
        symbol: str = "USDC",
        chain: str = "ethereum",
        blockchain_network: str = "Base",
        status: FundsLockStatus = FundsLockStatus.LOCKED,
        lock_type: FundsLockType = FundsLockType.SUBUSER_CARD_ORDER,
    ) -> FundsLock:
        async with self.session_factory() as session:
            lock = FundsLock(
                amount_locked=Decimal(amount),
                token_symbol_locked=symbol,
                chain=chain,
                blockchain_network=blockchain_network,
                status=status,
                type=lock_type,
                user_id=owner.id,
                sub_user_id=sub_user.id if sub_user else None,
            )
            session.add(lock)
            await session.commit()
            return lock

    async def get_user(self, user_id: str) -> User:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.user_id == user_id))
            return result.scalar_one()

    async def get_lock(self, lock_id: int) -> FundsLock:
        async with self.session_factory() as session:
            return await session.get(FundsLock, lock_id)

    async def platform_debits(self):
        async with self.session_factory() as session:
            result = await session.execute(select(PlatformDebit).order_by(PlatformDebit.id))
            return list(result.scalars().all())

    async def operation_locks(self):
        async with self.session_factory() as session:
            result = await session.execute(select(OperationLock).order_by(OperationLock.id))
            return list(result.scalars().all())


@pytest.fixture
def test_data_factory(session_factory):
    return TestDataFactory(session_factory)


@pytest.fixture
def token_registry():
    return TokenRegistry()


@pytest.fixture
def fake_rpc():
    """Chain RPC stand-in: 100 units of any token and an instantly successful receipt"""
    rpc = MagicMock()
    rpc.get_token_balance = AsyncMock(return_value="100")
    rpc.get_erc20_allowance = AsyncMock(return_value=Decimal("1000"))
    rpc.get_transaction_receipt = AsyncMock(return_value={"status": "0x1", "transactionHash": TX_HASH})
    return rpc


@pytest.fixture
def fake_custody():
    """Custody stand-in: every user owns one EVM wallet and every send succeeds"""
    custody = MagicMock()

    async def get_wallets(user_id, chain_type):
        address = SUB_WALLET_ADDRESS if user_id.startswith("sub") else MAIN_WALLET_ADDRESS
        return Ok([CustodyWallet(id=f"wallet-{user_id}", address=address)])

    custody.get_wallets = AsyncMock(side_effect=get_wallets)
    custody.send_transaction = AsyncMock(return_value=Ok(SentTransaction(hash=TX_HASH, caip2="eip155:8453")))
    return custody


@pytest.fixture
def balance_oracle(token_registry, fake_rpc):
    return TokenBalanceOracle(token_registry, fake_rpc, max_retries=2, retry_base_delay=0, sleep=no_sleep)


@pytest.fixture
def debit_executor(token_registry, fake_rpc, fake_custody):
    return CryptoDebitExecutor(
        fake_custody, token_registry, fake_rpc,
        confirmation_attempts=3, confirmation_interval=0, sleep=no_sleep,
    )


@pytest.fixture
def operation_locks(session_factory):
    return OperationLockManager(session_factory, default_ttl_seconds=300)


@pytest.fixture
def card_order_service(session_factory, balance_oracle, debit_executor, operation_locks, token_registry):
    return CardOrderService(
        session_factory=session_factory,
        balance_oracle=balance_oracle,
        debit_executor=debit_executor,
        operation_locks=operation_locks,
        token_registry=token_registry,
        settings_provider=make_settings,
    )


@pytest.fixture
def sub_user_funds_service(session_factory, balance_oracle, debit_executor, operation_locks, token_registry):
    return SubUserFundsService(
        session_factory=session_factory,
        balance_oracle=balance_oracle,
        debit_executor=debit_executor,
        operation_locks=operation_locks,
        token_registry=token_registry,
        settings_provider=make_settings,
    )
