"""
Operation Lock Active Unique Index Migration
Enforces at most one ACTIVE lock per (operation_name, user_id) on databases
created before the partial unique index existed

Migration: 20261019_operation_lock_active_unique_index
Purpose: Move operation lock exclusion from application checks to the database
"""

import asyncio
import logging
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

# Duplicates would make the unique index fail; keep the newest ACTIVE row per key
RELEASE_DUPLICATE_ACTIVE_LOCKS = """
UPDATE operation_locks
SET status = 'RELEASED', released_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
WHERE status = 'ACTIVE'
  AND EXISTS (
    SELECT 1 FROM operation_locks newer
    WHERE newer.operation_name = operation_locks.operation_name
      AND newer.user_id = operation_locks.user_id
      AND newer.status = 'ACTIVE'
      AND newer.id > operation_locks.id
  );
"""

ACTIVE_UNIQUE_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_operation_locks_active
ON operation_locks (operation_name, user_id)
WHERE status = 'ACTIVE';
"""

EXPIRY_SWEEP_INDEX = """
CREATE INDEX IF NOT EXISTS ix_operation_locks_status_expires
ON operation_locks (status, expires_at);
"""


def _get_engine(engine):
    if engine is None:
        from database import get_async_engine
        engine = get_async_engine()
    return engine


async def upgrade(engine: AsyncEngine = None):
    """Release duplicate ACTIVE rows, then create the partial unique index"""
    engine = _get_engine(engine)
    logger.info("🔧 Starting operation lock active unique index migration...")

    async with engine.begin() as conn:
        result = await conn.execute(text(RELEASE_DUPLICATE_ACTIVE_LOCKS))
        if result.rowcount:
            logger.warning(f"⚠️ Released {result.rowcount} duplicate ACTIVE operation locks")

    for name, sql in (("Active Unique Index", ACTIVE_UNIQUE_INDEX), ("Expiry Sweep Index", EXPIRY_SWEEP_INDEX)):
        logger.info(f"🔧 Creating {name}...")
        async with engine.begin() as conn:
            await conn.execute(text(sql))
        logger.info(f"✅ {name} created successfully")

    async with engine.connect() as conn:
        indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("operation_locks"))
    logger.info(f"✅ Migration complete. Found {len(indexes)} operation_locks indexes:")
    for index in indexes:
        logger.info(f"   {index['name']}: {index['column_names']} unique={bool(index.get('unique'))}")
    return [index['name'] for index in indexes]


async def downgrade(engine: AsyncEngine = None):
    """Drop the partial unique index"""
    engine = _get_engine(engine)
    async with engine.begin() as conn:
        await conn.execute(text("DROP INDEX IF EXISTS uq_operation_locks_active;"))
    logger.info("✅ Dropped uq_operation_locks_active")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(upgrade())
