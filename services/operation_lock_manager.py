"""
Operation Lock Manager Service
Per-user, per-operation mutual exclusion enforced by the database.

The partial unique index on operation_locks(operation_name, user_id) WHERE
status = 'ACTIVE' makes the INSERT the atomic step: two instances racing for
the same key cannot both commit, regardless of which process they run in.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional, Union

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import OperationLock, OperationLockStatus, OperationName
from utils.exceptions import AlreadyActiveError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _operation_value(operation_name: Union[OperationName, str]) -> str:
    return operation_name.value if isinstance(operation_name, OperationName) else str(operation_name)


def _already_active(user_id: str, operation: str) -> AlreadyActiveError:
    return AlreadyActiveError(
        f"A {operation} operation is already in progress for this user. "
        f"Please wait for it to complete and try again.",
        user_id=user_id,
        operation_name=operation,
    )


class OperationLockManager:
    """
    Database-backed operation lock manager

    acquire() raises AlreadyActiveError on contention; release() must run on
    every exit path, which hold() guarantees. Locks expire after their TTL and
    can then be reclaimed, so a holder calls renew() before any step that
    cannot be undone.
    """

    def __init__(self, session_factory: async_sessionmaker, default_ttl_seconds: Optional[int] = None):
        self.session_factory = session_factory
        self.default_ttl_seconds = default_ttl_seconds or Config.OPERATION_LOCK_TTL_SECONDS

    async def acquire(
        self,
        user_id: str,
        operation_name: Union[OperationName, str],
        ttl_seconds: Optional[int] = None,
    ) -> str:
        """
        Acquire the lock for (operation_name, user_id)

        Returns:
            Owner token to pass to release()

        Raises:
            AlreadyActiveError: an unexpired ACTIVE lock exists for the key
        """
        operation = _operation_value(operation_name)
        ttl = ttl_seconds or self.default_ttl_seconds

        owner_token = await self._try_insert(user_id, operation, ttl)
        if owner_token is None:
            # Stale lock left by a crashed worker: release it and retry once
            if await self._release_expired_for(user_id, operation) == 0:
                logger.info(f"⏳ OPERATION_LOCK_CONTENTION: {operation} already active for user {user_id}")
                raise _already_active(user_id, operation)
            logger.info(f"🔄 OPERATION_LOCK_EXPIRED: reclaimed {operation} for user {user_id}")
            owner_token = await self._try_insert(user_id, operation, ttl)
            if owner_token is None:
                raise _already_active(user_id, operation)

        return owner_token

    async def _try_insert(self, user_id: str, operation: str, ttl: int) -> Optional[str]:
        owner_token = str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(OperationLock(
                operation_name=operation,
                user_id=user_id,
                status=OperationLockStatus.ACTIVE,
                owner_token=owner_token,
                expires_at=utcnow() + timedelta(seconds=ttl),
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Unique violation on the active key is the contention signal
                await session.rollback()
                return None

        logger.info(
            f"🔒 OPERATION_LOCK_ACQUIRED: {operation} user={user_id} "
            f"token={owner_token[:8]}... expires_in={ttl}s"
        )
        return owner_token

    async def release(self, user_id: str, operation_name: Union[OperationName, str], owner_token: str) -> bool:
        """Mark the lock RELEASED; False if it was not held by owner_token"""
        operation = _operation_value(operation_name)
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(OperationLock)
                .where(and_(
                    OperationLock.operation_name == operation,
                    OperationLock.user_id == user_id,
                    OperationLock.owner_token == owner_token,
                    OperationLock.status == OperationLockStatus.ACTIVE,
                ))
                .values(status=OperationLockStatus.RELEASED, released_at=now, updated_at=now)
            )
            await session.commit()

        if result.rowcount > 0:
            logger.info(f"🔓 OPERATION_LOCK_RELEASED: {operation} user={user_id} token={owner_token[:8]}...")
            return True
        logger.warning(f"⚠️ OPERATION_LOCK_NOT_FOUND: cannot release {operation} user={user_id} token={owner_token[:8]}...")
        return False

    async def renew(
        self,
        user_id: str,
        operation_name: Union[OperationName, str],
        owner_token: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Confirm owner_token still holds the lock and push expires_at out by a full TTL

        An expired lock that nobody reclaimed is still held. Returns False once
        the lock was released or reclaimed by another caller.
        """
        operation = _operation_value(operation_name)
        ttl = ttl_seconds or self.default_ttl_seconds
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(OperationLock)
                .where(and_(
                    OperationLock.operation_name == operation,
                    OperationLock.user_id == user_id,
                    OperationLock.owner_token == owner_token,
                    OperationLock.status == OperationLockStatus.ACTIVE,
                ))
                .values(expires_at=now + timedelta(seconds=ttl), updated_at=now)
            )
            await session.commit()

        if result.rowcount > 0:
            logger.info(f"🔁 OPERATION_LOCK_RENEWED: {operation} user={user_id} expires_in={ttl}s")
            return True
        logger.error(f"🚨 OPERATION_LOCK_LOST: {operation} user={user_id} token={owner_token[:8]}... no longer held")
        return False

    @asynccontextmanager
    async def hold(
        self,
        user_id: str,
        operation_name: Union[OperationName, str],
        ttl_seconds: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Acquire for the duration of the block; released on every exit path"""
        owner_token = await self.acquire(user_id, operation_name, ttl_seconds)
        try:
            yield owner_token
        finally:
            await self.release(user_id, operation_name, owner_token)

    async def is_active(self, user_id: str, operation_name: Union[OperationName, str]) -> bool:
        operation = _operation_value(operation_name)
        async with self.session_factory() as session:
            result = await session.execute(
                select(OperationLock.id).where(and_(
                    OperationLock.operation_name == operation,
                    OperationLock.user_id == user_id,
                    OperationLock.status == OperationLockStatus.ACTIVE,
                ))
            )
            return result.first() is not None

    async def _release_expired_for(self, user_id: str, operation: str) -> int:
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(OperationLock)
                .where(and_(
                    OperationLock.operation_name == operation,
                    OperationLock.user_id == user_id,
                    OperationLock.status == OperationLockStatus.ACTIVE,
                    OperationLock.expires_at < now,
                ))
                .values(status=OperationLockStatus.RELEASED, released_at=now, updated_at=now)
            )
            await session.commit()
            return result.rowcount

    async def release_expired(self) -> int:
        """Release every expired ACTIVE lock; returns how many were released"""
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(OperationLock)
                .where(and_(
                    OperationLock.status == OperationLockStatus.ACTIVE,
                    OperationLock.expires_at < now,
                ))
                .values(status=OperationLockStatus.RELEASED, released_at=now, updated_at=now)
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"🧹 OPERATION_LOCK_CLEANUP: released {result.rowcount} expired locks")
        return result.rowcount
