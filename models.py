"""
Card Order Settlement Engine - Database Schema
==============================================

Schema for the funds-lock and card-order settlement core:
- Platform users with an optional main-user / sub-user hierarchy
- Funds locks reserving a token amount for a sub-user's card order
- Append-only platform debit ledger for fees charged on chain
- Per-user operation locks guarding sensitive multi-step operations

Wallet custody, KYC and the card issuer live behind external APIs and are
not modelled here.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, Numeric, String, func, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _enum_column(enum_cls, name: str):
    # Store the enum values ('not_ordered'), not the member names
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class CardOrderStatus(Enum):
    """Physical card lifecycle for a user"""
    NOT_ORDERED = "not_ordered"
    ORDERED = "ordered"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    ACTIVATED = "activated"


class FundsLockStatus(Enum):
    """Reservation state of a funds lock"""
    LOCKED = "LOCKED"
    FREE = "FREE"


class FundsLockType(Enum):
    """Purpose a funds lock was created for"""
    MAINUSER_CARD_ORDER = "mainuser_card_order"
    SUBUSER_CARD_ORDER = "subuser_card_order"


class PlatformDebitType(Enum):
    """What a platform debit was charged for"""
    CARD_ORDER = "card_order"
    OTHER = "other"


class PlatformDebitStatus(Enum):
    """On-chain outcome of a platform debit"""
    COMPLETED = "completed"
    FAILED = "failed"


class OperationLockStatus(Enum):
    """Operation lock state; only one ACTIVE row per (operation, user)"""
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"


class OperationName(Enum):
    """Sensitive operations serialized per user"""
    CARD_ORDER = "card_order"
    LOCK_SUB_USER_FUNDS = "lock_sub_user_funds"


class ChainType(Enum):
    ETHEREUM = "ethereum"
    SOLANA = "solana"


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Platform account; parent_user_id set means this is a sub-user"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)  # Custody provider DID
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Account hierarchy (single level)
    parent_user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    is_main_user: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Card and verification state
    card_order_status: Mapped[CardOrderStatus] = mapped_column(
        _enum_column(CardOrderStatus, "card_order_status"),
        default=CardOrderStatus.NOT_ORDERED,
        nullable=False,
    )
    card_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_identity_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    parent_user: Mapped[Optional["User"]] = relationship("User", remote_side=[id], foreign_keys=[parent_user_id])

    @property
    def is_sub_user(self) -> bool:
        return self.parent_user_id is not None

    def __repr__(self):
        return f"<User(user_id={self.user_id}, parent={self.parent_user_id}, card_order_status={self.card_order_status})>"


class FundsLock(Base):
    """Token amount reserved by a main user for a specific downstream operation"""
    __tablename__ = 'funds_locks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    amount_locked: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    token_symbol_locked: Mapped[str] = mapped_column(String(16), nullable=False)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    blockchain_network: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[FundsLockStatus] = mapped_column(
        _enum_column(FundsLockStatus, "funds_lock_status"),
        default=FundsLockStatus.LOCKED,
        nullable=False,
    )
    type: Mapped[FundsLockType] = mapped_column(_enum_column(FundsLockType, "funds_lock_type"), nullable=False)

    # Locker (main user) and the sub-user the funds are earmarked for
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    sub_user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user: Mapped["User"] = relationship("User", foreign_keys=[user_id])
    sub_user: Mapped[Optional["User"]] = relationship("User", foreign_keys=[sub_user_id])

    __table_args__ = (
        Index('ix_funds_locks_owner_sub_status_type', 'user_id', 'sub_user_id', 'status', 'type'),
    )

    def __repr__(self):
        return (
            f"<FundsLock(id={self.id}, amount={self.amount_locked} {self.token_symbol_locked}, "
            f"network={self.blockchain_network}, status={self.status})>"
        )


class PlatformDebit(Base):
    """Immutable ledger row for a fee charged on chain to a user"""
    __tablename__ = 'platform_debits'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)  # Ordering user
    debited_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)  # Wallet that paid
    symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[str] = mapped_column(String(64), nullable=False)  # Decimal string, no float round trip
    transaction_hash: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    chain_type: Mapped[str] = mapped_column(String(16), nullable=False)
    blockchain_network: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_type: Mapped[PlatformDebitType] = mapped_column(
        _enum_column(PlatformDebitType, "platform_debit_type"),
        default=PlatformDebitType.CARD_ORDER,
        nullable=False,
    )
    status: Mapped[PlatformDebitStatus] = mapped_column(
        _enum_column(PlatformDebitStatus, "platform_debit_status"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_platform_debits_tx_hash', 'transaction_hash'),
    )

    def __repr__(self):
        return f"<PlatformDebit(user_id={self.user_id}, amount={self.amount} {self.symbol}, status={self.status})>"


class OperationLock(Base):
    """Database-enforced mutual exclusion for one operation per user"""
    __tablename__ = 'operation_locks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_name: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[OperationLockStatus] = mapped_column(
        _enum_column(OperationLockStatus, "operation_lock_status"),
        default=OperationLockStatus.ACTIVE,
        nullable=False,
    )
    owner_token: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        # Partial unique index: the atomic guarantee behind acquire()
        Index(
            'uq_operation_locks_active',
            'operation_name', 'user_id',
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index('ix_operation_locks_status_expires', 'status', 'expires_at'),
    )

    def __repr__(self):
        return f"<OperationLock(operation={self.operation_name}, user_id={self.user_id}, status={self.status})>"
