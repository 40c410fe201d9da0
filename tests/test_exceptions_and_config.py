"""
Error Taxonomy and Configuration Test Suite
"""

from decimal import Decimal

import pytest

from config import CardOrderSettings, Config
from utils.atomic_transactions import async_atomic_transaction, in_atomic_transaction
from utils.exceptions import (
    AlreadyActiveError, BadRequestError, DebitExecutionError, DriftError, InternalServerError,
    NotFoundError, SettlementPersistenceError, UserNotFoundError, ValidationError
)


class TestErrorShape:
    """Test every error maps to one externally visible shape"""

    @pytest.mark.parametrize("error,status,name", [
        (ValidationError("bad fee"), 400, "Bad Request"),
        (DriftError("balance moved", what_changed=DriftError.BALANCE), 400, "Bad Request"),
        (DebitExecutionError("send failed"), 400, "Bad Request"),
        (AlreadyActiveError("busy", user_id="u1", operation_name="card_order"), 400, "Bad Request"),
        (UserNotFoundError("User not found"), 404, "Not Found"),
        (SettlementPersistenceError("not recorded", transaction_hash="0xabc"), 500, "Internal Server Error"),
    ])
    def test_to_dict(self, error, status, name):
        """Test status code, error name and message in the serialized form"""
        body = error.to_dict()

        assert body["status"] == "error"
        assert body["statusCode"] == status
        assert body["error"] == name
        assert body["message"] == error.message

    def test_hierarchy(self):
        """Test the HTTP class of each error family"""
        assert issubclass(DriftError, BadRequestError)
        assert issubclass(UserNotFoundError, NotFoundError)
        assert issubclass(SettlementPersistenceError, InternalServerError)

    def test_drift_details(self):
        """Test the changed aspect is carried on the error"""
        error = DriftError("fee moved", what_changed=DriftError.FEE)

        assert error.what_changed == "fee"
        assert error.details == {"whatChanged": "fee"}


class TestCardOrderSettings:
    """Test settings are read from the environment on demand"""

    def test_from_environment(self, monkeypatch):
        """Test values are parsed and normalized"""
        monkeypatch.setenv("NETWORK_TYPE", " mainet ")
        monkeypatch.setenv("CARD_ORDER_FEE", "50")
        monkeypatch.setenv("CARD_FEE_RECIPIENT_ADDRESS", "0x" + "cd" * 20)

        settings = CardOrderSettings.from_environment()

        assert settings.network_type == "MAINET"
        assert settings.order_fee == Decimal("50")
        assert settings.fee_recipient_address == "0x" + "cd" * 20

    def test_invalid_fee_is_none(self, monkeypatch):
        """Test an unparsable fee is treated as not configured"""
        monkeypatch.setenv("CARD_ORDER_FEE", "fifty")
        monkeypatch.delenv("NETWORK_TYPE", raising=False)

        settings = Config.card_order_settings()

        assert settings.order_fee is None
        assert settings.network_type is None


class TestAtomicTransaction:
    """Test the transaction depth marker"""

    @pytest.mark.asyncio
    async def test_depth_tracking_and_rollback(self, session_factory):
        """Test nesting is tracked and an error rolls back and propagates"""
        async with session_factory() as session:
            assert not in_atomic_transaction(session)
            with pytest.raises(RuntimeError):
                async with async_atomic_transaction(session):
                    async with async_atomic_transaction(session):
                        assert in_atomic_transaction(session)
                    raise RuntimeError("abort")
            assert not in_atomic_transaction(session)

    @pytest.mark.asyncio
    async def test_requires_session(self):
        """Test a missing session is rejected"""
        with pytest.raises(ValueError):
            async with async_atomic_transaction(None):
                pass
