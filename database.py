"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the card order settlement engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from sqlalchemy import inspect
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_async_engine() -> AsyncEngine:
    """Create the async engine on first use"""
    global _async_engine
    if _async_engine is None:
        if not Config.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")

        _async_engine = create_async_engine(
            Config.async_database_url(),
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,       # Wait max 30 seconds for connection during bursts
            echo=Config.DATABASE_ECHO,
            connect_args={
                "server_settings": {
                    "application_name": "card_order_engine",  # For monitoring in pg_stat_activity
                },
                "timeout": 10,
                "command_timeout": 30,
            }
        )
    return _async_engine


def get_session_factory() -> async_sessionmaker:
    """Async session factory bound to the application engine"""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_async_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False  # Snapshots are read after commit in background tasks
        )
    return _session_factory


@asynccontextmanager
async def get_async_session():
    """
    Async context manager for database sessions.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(select(User).where(...))
            user = result.scalar_one_or_none()
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = engine or get_async_engine()
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    except ProgrammingError as e:
        # Indexes that already exist are expected on restart
        if "already exists" not in str(e):
            logger.error(f"❌ Failed to create database tables: {e}")
            raise
        logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")

    async with engine.connect() as conn:
        existing_tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
    return True


async def dispose_engine():
    """Close pooled connections on shutdown"""
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("🔌 Database engine disposed")
    _async_engine = None
    _session_factory = None
