"""Privy server-wallet custody API client"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from utils.provider_results import Ok, ProviderError, ProviderResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustodyWallet:
    id: str
    address: str


@dataclass(frozen=True)
class SentTransaction:
    hash: str
    caip2: Optional[str] = None


class PrivyCustodyClient:
    """
    Wallet lookups and transaction submission through Privy

    Every public method returns Ok(...) or ProviderError(...) instead of
    raising, so callers branch on one tagged shape rather than raw JSON.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        auth_base_url: Optional[str] = None,
        api_base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.app_id = app_id or Config.PRIVY_APP_ID
        self.app_secret = app_secret or Config.PRIVY_APP_SECRET
        self.auth_base_url = (auth_base_url or Config.PRIVY_AUTH_BASE_URL).rstrip("/")
        self.api_base_url = (api_base_url or Config.PRIVY_API_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.CUSTODY_TIMEOUT_SECONDS)

        if not (self.app_id and self.app_secret):
            logger.warning("PRIVY_APP_ID / PRIVY_APP_SECRET not configured - custody calls will fail")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "privy-app-id": self.app_id,
        }

    async def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> ProviderResult[Dict[str, Any]]:
        try:
            async with aiohttp.ClientSession(
                timeout=self.timeout,
                auth=aiohttp.BasicAuth(self.app_id, self.app_secret),
            ) as session:
                async with session.request(method, url, json=payload, headers=self._get_headers()) as response:
                    if response.status not in (200, 201):
                        error_text = await response.text()
                        logger.error(f"❌ CUSTODY_API_ERROR: {method} {url} -> {response.status}: {error_text[:200]}")
                        return ProviderError(status=response.status, message=error_text[:500])
                    return Ok(await response.json(content_type=None))
        except aiohttp.ClientError as e:
            logger.error(f"❌ CUSTODY_NETWORK_ERROR: {method} {url}: {e}")
            return ProviderError(status=None, message=f"Network error: {e}")

    async def get_wallets(self, user_id: str, chain_type: str) -> ProviderResult[List[CustodyWallet]]:
        """Wallets of user_id for chain_type; an empty list means none exist"""
        if not user_id:
            logger.warning("Empty user_id provided for wallet lookup")
            return Ok([])

        result = await self._request("GET", f"{self.auth_base_url}/users/{user_id}")
        if isinstance(result, ProviderError):
            return result

        linked_accounts = result.data.get("linked_accounts")
        if not isinstance(linked_accounts, list):
            logger.warning(f"⚠️ CUSTODY_NO_LINKED_ACCOUNTS: user {user_id}")
            return Ok([])

        wallets = [
            CustodyWallet(id=str(account.get("id") or ""), address=account["address"])
            for account in linked_accounts
            if account.get("type") == "wallet"
            and account.get("chain_type") == chain_type
            and account.get("address")
        ]
        logger.debug(f"Found {len(wallets)} {chain_type} wallets for {user_id}: {wallets}")
        return Ok(wallets)

    async def send_transaction(self, wallet_id: str, transaction: Dict[str, Any], chain_id: int) -> ProviderResult[SentTransaction]:
        """Sign and broadcast an EVM transaction from a server wallet"""
        payload = {
            "method": "eth_sendTransaction",
            "caip2": f"eip155:{chain_id}",
            "chain_type": "ethereum",
            "params": {"transaction": transaction},
        }
        result = await self._request("POST", f"{self.api_base_url}/wallets/{wallet_id}/rpc", payload)
        if isinstance(result, ProviderError):
            return result

        data = result.data.get("data") or {}
        return Ok(SentTransaction(hash=data.get("hash") or "", caip2=data.get("caip2")))
