"""
Card order engine bootstrap.
Loads .env, configures logging, creates tables and runs the maintenance
scheduler. The HTTP layer imports build_services() to obtain the wired
CardOrderService and SubUserFundsService.
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

from config import Config  # noqa: E402
from database import create_tables, dispose_engine, get_session_factory  # noqa: E402
from jobs.scheduler import CardOrderScheduler  # noqa: E402
from services.card_order_service import CardOrderService  # noqa: E402
from services.chain_rpc import ChainRPCClient  # noqa: E402
from services.crypto_debit_executor import CryptoDebitExecutor  # noqa: E402
from services.custody_provider import PrivyCustodyClient  # noqa: E402
from services.operation_lock_manager import OperationLockManager  # noqa: E402
from services.sub_user_funds_service import SubUserFundsService  # noqa: E402
from services.token_balance_oracle import TokenBalanceOracle  # noqa: E402
from services.token_registry import TokenRegistry  # noqa: E402

logger = logging.getLogger(__name__)


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


@dataclass
class Services:
    card_orders: CardOrderService
    sub_user_funds: SubUserFundsService
    operation_locks: OperationLockManager


def build_services(session_factory=None) -> Services:
    """Wire the engine's collaborators from configuration"""
    session_factory = session_factory or get_session_factory()
    registry = TokenRegistry.from_config()
    rpc_client = ChainRPCClient()
    oracle = TokenBalanceOracle(registry, rpc_client)
    debit_executor = CryptoDebitExecutor(PrivyCustodyClient(), registry, rpc_client)
    operation_locks = OperationLockManager(session_factory)

    return Services(
        card_orders=CardOrderService(
            session_factory=session_factory,
            balance_oracle=oracle,
            debit_executor=debit_executor,
            operation_locks=operation_locks,
            token_registry=registry,
        ),
        sub_user_funds=SubUserFundsService(
            session_factory=session_factory,
            balance_oracle=oracle,
            debit_executor=debit_executor,
            operation_locks=operation_locks,
            token_registry=registry,
        ),
        operation_locks=operation_locks,
    )


async def run():
    setup_logging()
    Config.log_environment_config()

    await create_tables()
    services = build_services()

    scheduler = CardOrderScheduler(services.operation_locks)
    scheduler.start()
    logger.info("🚀 Card order engine started")

    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown()
        await dispose_engine()


if __name__ == "__main__":
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("👋 Card order engine stopped")
