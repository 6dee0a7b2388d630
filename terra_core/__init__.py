"""
Terra chain adapter for a trading gateway.

Key features:
- Token registry loaded lazily from a URL or file token list
- PBKDF2 + AES-256-GCM encrypted keystore, one JSON file per address
- secp256k1 wallets with bech32 ``terra1...`` addresses
- Balance resolution including IBC denom-trace lookups
- aiohttp LCD client and HTTP query surface
"""

__version__ = "0.1.0"
__all__ = [
    "adapter",
    "api",
    "balances",
    "config",
    "controllers",
    "errors",
    "keystore",
    "logging_config",
    "provider",
    "tokens",
    "validators",
    "wallet",
]
