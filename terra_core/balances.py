"""
Balance resolution: raw on-chain denominations → registry tokens.

Each denom returned by the provider goes through a three-step decision
procedure (:meth:`BalanceResolver.resolve_denom`):

1. **direct**      – the denom is a registered token's base denom;
2. **ibc trace**   – the denom is ``ibc/<HASH>``; the provider's denom-trace
   endpoint yields the base denom, which is looked up again;
3. **passthrough** – unknown denoms are kept under their raw name.

All denoms of one balance query are resolved concurrently.  Precision comes
from live bank metadata when the chain has it, otherwise from the token
list; a denom with neither reports ``decimals=None`` and raises
:class:`UnknownTokenDecimals` when its value has to be formatted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from terra_core.errors import DenomResolutionAmbiguous, ProviderError, UnknownTokenDecimals

if TYPE_CHECKING:
    from terra_core.provider import ChainProvider, Coin, DenomMetadata
    from terra_core.tokens import Token, TokenRegistry
    from terra_core.wallet import WalletHandle

logger = logging.getLogger("terra_balances")

IBC_PREFIX = "ibc/"

_MISSING = object()


class _TTLCache:
    """Values that expire *ttl* seconds after being stored; ``ttl <= 0`` stores nothing."""

    def __init__(self, ttl: float):
        self.ttl = ttl
        self._entries: dict[str, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None or entry[1] <= time.monotonic():
            return _MISSING
        return entry[0]

    def put(self, key: str, value: Any) -> None:
        if self.ttl <= 0:
            return
        now = time.monotonic()
        expired = [k for k, (_, expiry) in self._entries.items() if expiry <= now]
        for k in expired:
            del self._entries[k]
        self._entries[key] = (value, now + self.ttl)


class ResolutionKind(str, Enum):
    DIRECT = "direct"
    IBC_TRACE = "ibc_trace"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class DenomResolution:
    denom: str
    kind: ResolutionKind
    token: Optional[Token] = None

    @property
    def key(self) -> str:
        return self.token.symbol if self.token is not None else self.denom


def format_token_value(amount: int, decimals: int) -> str:
    """Exact decimal rendering of an integer amount, e.g. ``1000000, 6 → "1.0"``."""
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    whole, frac = divmod(amount, 10 ** decimals)
    frac_str = str(frac).zfill(decimals).rstrip("0") if decimals else ""
    return f"{whole}.{frac_str or '0'}"


@dataclass(frozen=True)
class BalanceEntry:
    key: str
    denom: str
    amount: int
    decimals: Optional[int]
    decimals_source: str = "unknown"   # "metadata", "token_list" or "unknown"
    resolution: ResolutionKind = ResolutionKind.PASSTHROUGH

    def require_decimals(self) -> int:
        if self.decimals is None:
            raise UnknownTokenDecimals(self.denom)
        return self.decimals

    def to_string(self) -> str:
        return format_token_value(self.amount, self.require_decimals())

    def to_dict(self) -> dict:
        return {
            "denom": self.denom,
            "amount": str(self.amount),
            "decimals": self.decimals,
            "decimalsSource": self.decimals_source,
            "resolution": self.resolution.value,
        }


class BalanceResolver:
    """Resolve a wallet's balances against a :class:`TokenRegistry`."""

    def __init__(
        self,
        registry: TokenRegistry,
        provider: ChainProvider,
        trace_cache_ttl: float = 3600.0,
    ):
        self.registry = registry
        self.provider = provider
        self.trace_cache_ttl = trace_cache_ttl
        # ibc hash -> base denom or None
        self._trace_cache = _TTLCache(trace_cache_ttl)
        # denom -> DenomMetadata or None
        self._metadata_cache = _TTLCache(trace_cache_ttl)

    # ── denom resolution ─────────────────────────────────────────

    async def _trace_base_denom(self, ibc_hash: str) -> Optional[str]:
        cached = self._trace_cache.get(ibc_hash)
        if cached is not _MISSING:
            return cached
        base_denom = await self.provider.get_denom_trace(ibc_hash)
        self._trace_cache.put(ibc_hash, base_denom)
        return base_denom

    def lookup_direct(self, denom: str) -> Optional[DenomResolution]:
        token = self.registry.get_by_base(denom)
        if token is None:
            return None
        return DenomResolution(denom, ResolutionKind.DIRECT, token)

    async def lookup_ibc(self, denom: str) -> Optional[DenomResolution]:
        if not denom.startswith(IBC_PREFIX):
            return None
        ibc_hash = denom[len(IBC_PREFIX):]
        if not ibc_hash:
            return None
        base_denom = await self._trace_base_denom(ibc_hash)
        if base_denom is None:
            return None
        token = self.registry.get_by_base(base_denom)
        if token is None:
            return None
        return DenomResolution(denom, ResolutionKind.IBC_TRACE, token)

    async def resolve_denom(self, denom: str) -> DenomResolution:
        resolution = self.lookup_direct(denom) or await self.lookup_ibc(denom)
        if resolution is None:
            resolution = DenomResolution(denom, ResolutionKind.PASSTHROUGH)
        return resolution

    # ── decimals ─────────────────────────────────────────────────

    async def _metadata_for(self, denom: str) -> Optional[DenomMetadata]:
        """Bank metadata for *denom*; ``None`` when absent or unreachable."""
        cached = self._metadata_cache.get(denom)
        if cached is not _MISSING:
            return cached
        try:
            metadata = await self.provider.get_denom_metadata(denom)
        except ProviderError as exc:
            # not cached; the next query asks the chain again
            logger.warning(f"Denom metadata unavailable for {denom}: {exc.message}")
            return None
        self._metadata_cache.put(denom, metadata)
        return metadata

    async def _decimals_for(self, resolution: DenomResolution) -> tuple[Optional[int], str]:
        metadata = await self._metadata_for(resolution.denom)
        chain_decimals = metadata.decimals if metadata is not None else None
        token = resolution.token

        if chain_decimals is not None:
            if token is not None and token.decimals != chain_decimals:
                logger.warning(
                    f"Decimals mismatch for {resolution.denom} ({token.symbol}): "
                    f"token list says {token.decimals}, chain metadata says "
                    f"{chain_decimals}; using chain metadata"
                )
            return chain_decimals, "metadata"
        if token is not None:
            return token.decimals, "token_list"
        return None, "unknown"

    async def _entry_for(self, coin: Coin) -> BalanceEntry:
        resolution = await self.resolve_denom(coin.denom)
        decimals, source = await self._decimals_for(resolution)
        return BalanceEntry(
            key=resolution.key,
            denom=coin.denom,
            amount=coin.amount,
            decimals=decimals,
            decimals_source=source,
            resolution=resolution.kind,
        )

    # ── balances ─────────────────────────────────────────────────

    async def get_balances(self, wallet: WalletHandle | str) -> dict[str, BalanceEntry]:
        """Every balance the chain reports, keyed by symbol or raw denom."""
        address = wallet if isinstance(wallet, str) else wallet.address
        coins = await self.provider.get_balance(address)
        entries = await asyncio.gather(*(self._entry_for(c) for c in coins))

        balances: dict[str, BalanceEntry] = {}
        for entry in entries:
            existing = balances.get(entry.key)
            if existing is not None:
                raise DenomResolutionAmbiguous(entry.key, [existing.denom, entry.denom])
            balances[entry.key] = entry

        logger.debug(f"Resolved {len(balances)} balances for {address}")
        return balances
