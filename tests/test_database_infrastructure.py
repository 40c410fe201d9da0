"""
Database Infrastructure Test Suite
Table bootstrap, session helper and the operation lock index migration
"""

import importlib

import pytest
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import create_async_engine

import database
import main
from config import Config
from models import User

migration = importlib.import_module("migrations.20261019_operation_lock_active_unique_index")


class TestBootstrap:
    """Test engine and table setup"""

    @pytest.mark.asyncio
    async def test_create_tables(self, tmp_path):
        """Test every model table is created on an empty database"""
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bootstrap.db'}")
        try:
            assert await database.create_tables(engine) is True
            # second run is a no-op
            assert await database.create_tables(engine) is True

            async with engine.connect() as conn:
                rows = await conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'table'"))
                tables = {row[0] for row in rows}
        finally:
            await engine.dispose()

        assert {"users", "funds_locks", "platform_debits", "operation_locks"} <= tables

    def test_engine_requires_database_url(self, monkeypatch):
        """Test a missing DATABASE_URL fails loudly"""
        monkeypatch.setattr(Config, "DATABASE_URL", "")
        monkeypatch.setattr(database, "_async_engine", None)

        with pytest.raises(ValueError, match="DATABASE_URL"):
            database.get_async_engine()

    @pytest.mark.asyncio
    async def test_get_async_session_commits_and_rolls_back(self, monkeypatch, session_factory):
        """Test the session helper commits on success and rolls back on error"""
        monkeypatch.setattr(database, "_session_factory", session_factory)

        async with database.get_async_session() as session:
            session.add(User(user_id="committed", is_main_user=True, is_identity_verified=True))

        with pytest.raises(RuntimeError):
            async with database.get_async_session() as session:
                session.add(User(user_id="rolled-back", is_main_user=True, is_identity_verified=True))
                await session.flush()
                raise RuntimeError("abort")

        async with session_factory() as session:
            user_ids = (await session.execute(select(User.user_id))).scalars().all()

        assert user_ids == ["committed"]


class TestOperationLockIndexMigration:
    """Test the partial unique index migration on a pre-index database"""

    @pytest.mark.asyncio
    async def test_upgrade_releases_duplicates_and_creates_index(self, db_engine):
        """Test duplicate ACTIVE rows are released before the index is created"""
        await migration.downgrade(db_engine)

        async with db_engine.begin() as conn:
            for token in ("older", "newer"):
                await conn.execute(text(
                    "INSERT INTO operation_locks (operation_name, user_id, status, owner_token, expires_at) "
                    "VALUES ('card_order', 'user-1', 'ACTIVE', :token, '2030-01-01 00:00:00.000000')"
                ), {"token": token})

        index_names = await migration.upgrade(db_engine)

        async with db_engine.connect() as conn:
            rows = (await conn.execute(text(
                "SELECT owner_token, status FROM operation_locks ORDER BY id"
            ))).fetchall()

        assert [tuple(row) for row in rows] == [("older", "RELEASED"), ("newer", "ACTIVE")]
        assert "uq_operation_locks_active" in index_names
        assert "ix_operation_locks_status_expires" in index_names

        async with db_engine.begin() as conn:
            with pytest.raises(Exception):
                await conn.execute(text(
                    "INSERT INTO operation_locks (operation_name, user_id, status, owner_token, expires_at) "
                    "VALUES ('card_order', 'user-1', 'ACTIVE', 'third', '2030-01-01 00:00:00.000000')"
                ))


class TestServiceWiring:
    """Test the bootstrap wiring shared by the HTTP layer"""

    def test_build_services_shares_collaborators(self, session_factory):
        """Test both services share one lock manager, registry and session factory"""
        services = main.build_services(session_factory)

        assert services.card_orders.operation_locks is services.operation_locks
        assert services.sub_user_funds.operation_locks is services.operation_locks
        assert services.card_orders.token_registry is services.sub_user_funds.token_registry
        assert services.card_orders.session_factory is session_factory
        assert services.card_orders.settlement.session_factory is session_factory

    def test_async_database_url(self, monkeypatch):
        """Test the sync URL is rewritten for asyncpg"""
        monkeypatch.setattr(Config, "DATABASE_URL", "postgresql://u:p@db/cards?sslmode=require")

        assert Config.async_database_url() == "postgresql+asyncpg://u:p@db/cards?ssl=require"
