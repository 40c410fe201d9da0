"""User lookups returning immutable snapshots for the card order checks"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import CardOrderStatus, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserSnapshot:
    """Point-in-time copy of the user fields the order flow depends on"""
    id: int
    user_id: str
    parent_id: Optional[int]
    is_main_user: bool
    card_order_status: CardOrderStatus
    card_id: Optional[str]
    is_identity_verified: bool

    @property
    def is_sub_user(self) -> bool:
        return self.parent_id is not None

    @classmethod
    def from_model(cls, user: User) -> "UserSnapshot":
        return cls(
            id=user.id,
            user_id=user.user_id,
            parent_id=user.parent_user_id,
            is_main_user=bool(user.is_main_user),
            card_order_status=user.card_order_status,
            card_id=user.card_id,
            is_identity_verified=bool(user.is_identity_verified),
        )


class UserRepository:
    """Read access to users by external id or primary key"""

    @staticmethod
    async def get_by_user_id(session: AsyncSession, user_id: str) -> Optional[UserSnapshot]:
        result = await session.execute(select(User).where(User.user_id == user_id))
        user = result.scalar_one_or_none()
        return UserSnapshot.from_model(user) if user else None

    @staticmethod
    async def get_by_pk(session: AsyncSession, pk: int) -> Optional[UserSnapshot]:
        user = await session.get(User, pk)
        return UserSnapshot.from_model(user) if user else None

    @staticmethod
    async def get_parent(session: AsyncSession, user: UserSnapshot) -> Optional[UserSnapshot]:
        if user.parent_id is None:
            return None
        return await UserRepository.get_by_pk(session, user.parent_id)
