"""Atomic transaction utilities for ledger writes and card order settlement"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_DEPTH_ATTR = '_atomic_transaction_depth'


def in_atomic_transaction(session: AsyncSession) -> bool:
    """True while the session is inside async_atomic_transaction"""
    return getattr(session, _DEPTH_ATTR, 0) > 0


@asynccontextmanager
async def async_atomic_transaction(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for atomic database transactions with proper rollback.
    Ensures ledger mutations are fully atomic and consistent.

    Nested use on the same session defers the commit to the outermost level;
    an error at any level rolls back the whole unit of work.
    """
    if session is None:
        raise ValueError("async_atomic_transaction requires an AsyncSession")

    transaction_depth = getattr(session, _DEPTH_ATTR, 0)
    try:
        setattr(session, _DEPTH_ATTR, transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested async transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            await session.commit()
            logger.debug("Outermost async transaction committed successfully")
        else:
            logger.debug(f"Nested async transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost")

    except Exception as e:
        # Always rollback on error, regardless of nesting
        await session.rollback()
        logger.error(f"Async transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, _DEPTH_ATTR, 1)
        setattr(session, _DEPTH_ATTR, max(0, current_depth - 1))
