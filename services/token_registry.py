"""
Token Registry
Static metadata for the stablecoins accepted as card order payment, by
network environment (MAINET / TESTNET), chain type and blockchain network.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class TokenInfo:
    """Immutable token metadata for one (network type, chain type, network, symbol)"""
    name: str
    symbol: str
    decimals: int
    token_address: str
    rpc_url: str
    chain_id: int
    gateway_address: str
    network_type: str
    chain_type: str
    blockchain_network: str

    @property
    def is_evm(self) -> bool:
        return self.chain_type == "ethereum"


DEFAULT_TOKENS: Tuple[TokenInfo, ...] = (
    # MAINET
    TokenInfo(
        name="USD Coin", symbol="USDC", decimals=6,
        token_address="0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
        rpc_url="https://mainnet.base.org", chain_id=8453,
        gateway_address="0x30f6a8457f8e42371e204a9c103f2bd42341dd0f",
        network_type="MAINET", chain_type="ethereum", blockchain_network="Base",
    ),
    TokenInfo(
        name="Tether USD", symbol="USDT", decimals=18,
        token_address="0x55d398326f99059fF775485246999027B3197955",
        rpc_url="https://bsc-dataseed.binance.org", chain_id=56,
        gateway_address="0x1FA0EE7F9410F6fa49B7AD5Da72Cf01647090028",
        network_type="MAINET", chain_type="ethereum", blockchain_network="BNB Smart Chain",
    ),
    TokenInfo(
        name="USD Coin", symbol="USDC", decimals=18,
        token_address="0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
        rpc_url="https://bsc-dataseed.binance.org", chain_id=56,
        gateway_address="0x1FA0EE7F9410F6fa49B7AD5Da72Cf01647090028",
        network_type="MAINET", chain_type="ethereum", blockchain_network="BNB Smart Chain",
    ),
    TokenInfo(
        name="USD Coin", symbol="USDC", decimals=6,
        token_address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        rpc_url="https://api.mainnet-beta.solana.com", chain_id=101,
        gateway_address=ZERO_ADDRESS,
        network_type="MAINET", chain_type="solana", blockchain_network="Solana",
    ),
    # TESTNET
    TokenInfo(
        name="USD Coin Testnet", symbol="USDC", decimals=6,
        token_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        rpc_url="https://sepolia.base.org", chain_id=84532,
        gateway_address="0x847dfdaa218f9137229cf8424378871a1da8f625",
        network_type="TESTNET", chain_type="ethereum", blockchain_network="Base Sepolia",
    ),
    TokenInfo(
        name="Tether USD", symbol="USDT", decimals=18,
        token_address="0x337610d27c682E347C9cD60BD4b3b107C9d34dDd",
        rpc_url="https://data-seed-prebsc-1-s1.binance.org:8545", chain_id=97,
        gateway_address=ZERO_ADDRESS,
        network_type="TESTNET", chain_type="ethereum", blockchain_network="BNB Smart Chain Testnet",
    ),
    TokenInfo(
        name="USD Coin Devnet", symbol="USDC", decimals=6,
        token_address="4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
        rpc_url="https://api.devnet.solana.com", chain_id=103,
        gateway_address="0x847dfdaa218f9137229cf8424378871a1da8f625",
        network_type="TESTNET", chain_type="solana", blockchain_network="Solana Devnet",
    ),
)


def _network_key(name: str) -> str:
    return " ".join(name.split()).lower()


class TokenRegistry:
    """Read-only lookup over injected token metadata"""

    def __init__(self, tokens: Iterable[TokenInfo] = DEFAULT_TOKENS,
                 rpc_url_overrides: Optional[Mapping[str, str]] = None):
        overrides = {_network_key(k): v for k, v in (rpc_url_overrides or {}).items()}
        index: Dict[Tuple[str, str, str, str], TokenInfo] = {}
        networks: Dict[str, str] = {}
        for token in tokens:
            net_key = _network_key(token.blockchain_network)
            if net_key in overrides:
                token = replace(token, rpc_url=overrides[net_key])
            key = (token.network_type.upper(), token.chain_type.lower(), net_key, token.symbol.upper())
            if key in index:
                raise ValueError(f"Duplicate token registry entry: {key}")
            index[key] = token
            networks.setdefault(net_key, token.blockchain_network)
        self._tokens = index
        self._networks = networks

    @classmethod
    def from_config(cls) -> "TokenRegistry":
        from config import Config
        return cls(DEFAULT_TOKENS, Config.RPC_URL_OVERRIDES)

    def canonical_network(self, blockchain_network: str) -> Optional[str]:
        """Registry spelling of a network name, matched case-insensitively"""
        if not blockchain_network:
            return None
        return self._networks.get(_network_key(blockchain_network))

    def lookup(self, symbol: str, network_type: str, chain_type: str,
               blockchain_network: str) -> Optional[TokenInfo]:
        """Token metadata, or None for an unsupported combination"""
        if not (symbol and network_type and chain_type and blockchain_network):
            return None
        key = (
            network_type.strip().upper(),
            chain_type.strip().lower(),
            _network_key(blockchain_network),
            symbol.strip().upper(),
        )
        token = self._tokens.get(key)
        if token is None:
            logger.debug(f"TOKEN_LOOKUP_MISS: {key}")
        return token

    def tokens_for(self, network_type: str, chain_type: str) -> Tuple[TokenInfo, ...]:
        network_type = network_type.strip().upper()
        chain_type = chain_type.strip().lower()
        return tuple(
            t for (nt, ct, _, _), t in self._tokens.items()
            if nt == network_type and ct == chain_type
        )
