"""Configuration management for the card order settlement engine"""

import os
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: Optional[str] = None) -> Optional[Decimal]:
    """Read a Decimal from the environment, None when unset or unparsable"""
    raw = os.getenv(name, default)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        logger.warning(f"⚠️ CONFIG_INVALID_DECIMAL: {name}={raw!r} is not a valid decimal")
        return None


def _json_env(name: str) -> Dict[str, str]:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️ CONFIG_INVALID_JSON: {name} could not be parsed: {e}")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"⚠️ CONFIG_INVALID_JSON: {name} must be a JSON object")
        return {}
    return {str(k): str(v) for k, v in value.items()}


@dataclass(frozen=True)
class CardOrderSettings:
    """Point-in-time view of the settings a card order depends on.

    Read fresh for every check so that a configuration change between the
    first validation and the debit is observed by the re-verification step.
    """

    network_type: Optional[str]
    order_fee: Optional[Decimal]
    fee_recipient_address: Optional[str]

    @classmethod
    def from_environment(cls) -> "CardOrderSettings":
        network_type = os.getenv("NETWORK_TYPE", "").strip().upper() or None
        recipient = os.getenv("CARD_FEE_RECIPIENT_ADDRESS", "").strip() or None
        return cls(
            network_type=network_type,
            order_fee=_decimal_env("CARD_ORDER_FEE"),
            fee_recipient_address=recipient,
        )


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Network environment the registry is queried for: MAINET or TESTNET
    SUPPORTED_NETWORK_TYPES = ("MAINET", "TESTNET")
    NETWORK_TYPE = os.getenv("NETWORK_TYPE", "").strip().upper()

    # Card order fee charged in the ordered token and where it is sent
    CARD_ORDER_FEE = _decimal_env("CARD_ORDER_FEE")
    CARD_FEE_RECIPIENT_ADDRESS = os.getenv("CARD_FEE_RECIPIENT_ADDRESS", "").strip()

    # Wallet custody provider (Privy server wallets)
    PRIVY_APP_ID = os.getenv("PRIVY_APP_ID", "")
    PRIVY_APP_SECRET = os.getenv("PRIVY_APP_SECRET", "")
    PRIVY_AUTH_BASE_URL = os.getenv("PRIVY_AUTH_BASE_URL", "https://auth.privy.io/api/v1")
    PRIVY_API_BASE_URL = os.getenv("PRIVY_API_BASE_URL", "https://api.privy.io/v1")
    CUSTODY_TIMEOUT_SECONDS = float(os.getenv("CUSTODY_TIMEOUT_SECONDS", "30"))

    # JSON-RPC endpoints, {"Base": "https://..."} replaces the registry default
    RPC_URL_OVERRIDES = _json_env("RPC_URL_OVERRIDES")
    RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "15"))

    # Balance lookups: retries after the first attempt, delay grows 1s per attempt
    BALANCE_MAX_RETRIES = int(os.getenv("BALANCE_MAX_RETRIES", "2"))
    BALANCE_RETRY_BASE_DELAY_SECONDS = float(os.getenv("BALANCE_RETRY_BASE_DELAY_SECONDS", "1.0"))

    # Allowance and confirmation polling: attempts, delay = interval * attempt
    ALLOWANCE_MAX_ATTEMPTS = int(os.getenv("ALLOWANCE_MAX_ATTEMPTS", "5"))
    ALLOWANCE_POLL_INTERVAL_SECONDS = float(os.getenv("ALLOWANCE_POLL_INTERVAL_SECONDS", "1.0"))
    CONFIRMATION_MAX_ATTEMPTS = int(os.getenv("CONFIRMATION_MAX_ATTEMPTS", "5"))
    CONFIRMATION_POLL_INTERVAL_SECONDS = float(os.getenv("CONFIRMATION_POLL_INTERVAL_SECONDS", "2.0"))

    # Operation locks (per user, per operation)
    OPERATION_LOCK_TTL_SECONDS = int(os.getenv("OPERATION_LOCK_TTL_SECONDS", "300"))
    OPERATION_LOCK_SWEEP_MINUTES = int(os.getenv("OPERATION_LOCK_SWEEP_MINUTES", "5"))

    # Caller-side bound on one order orchestration
    ORDER_TIMEOUT_SECONDS = float(os.getenv("ORDER_TIMEOUT_SECONDS", "90"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def card_order_settings() -> CardOrderSettings:
        """Re-read the card order settings from the environment"""
        return CardOrderSettings.from_environment()

    @staticmethod
    def async_database_url() -> str:
        """DATABASE_URL rewritten for the asyncpg driver"""
        url = Config.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        url = url.replace("sslmode=require", "ssl=require")
        url = url.replace("sslmode=prefer", "ssl=prefer")
        url = url.replace("sslmode=disable", "ssl=disable")
        return url

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        settings = Config.card_order_settings()
        logger.info("🔧 Card Order Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Network type: {settings.network_type or 'NOT CONFIGURED'}")
        logger.info(f"   Card order fee: {settings.order_fee if settings.order_fee is not None else 'NOT CONFIGURED'}")
        logger.info(f"   Fee recipient configured: {bool(settings.fee_recipient_address)}")
        logger.info(f"   Database configured: {bool(Config.DATABASE_URL)}")
        logger.info(f"   Custody provider configured: {bool(Config.PRIVY_APP_ID and Config.PRIVY_APP_SECRET)}")
        if Config.RPC_URL_OVERRIDES:
            logger.info(f"   RPC overrides: {', '.join(sorted(Config.RPC_URL_OVERRIDES))}")
