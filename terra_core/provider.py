"""
Chain provider interface and the default LCD (Cosmos SDK REST) client.

The adapter only talks to the chain through :class:`ChainProvider`; tests
substitute an in-memory fake, production uses :class:`LCDProvider`.

LCD endpoints used
------------------
GET /cosmos/bank/v1beta1/balances/{address}          all balances (paginated)
GET /ibc/apps/transfer/v1/denom_traces/{hash}         IBC denom trace
GET /cosmos/base/tendermint/v1beta1/blocks/latest     chain height
GET /cosmos/tx/v1beta1/txs/{hash}                     indexed transaction
GET /cosmos/bank/v1beta1/denoms_metadata/{denom}      bank denom metadata

A 404, or a body carrying gRPC status ``NOT_FOUND`` (code 5), is reported as
"not found" (``None``); any other failure raises :class:`ProviderError`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol
from urllib.parse import quote

import aiohttp

from terra_core.errors import ProviderError

if TYPE_CHECKING:
    from terra_core.config import NetworkConfig

logger = logging.getLogger("terra_provider")

GRPC_NOT_FOUND = 5


# ─── Data types ──────────────────────────────────────────────────────────


def parse_amount(raw: Any) -> int:
    """Parse an on-chain amount string into a non-negative integer."""
    text = str(raw).strip()
    if not text.isdigit():
        raise ValueError(f"Invalid coin amount {raw!r}")
    return int(text)


@dataclass(frozen=True)
class Coin:
    denom: str
    amount: int

    @classmethod
    def from_dict(cls, raw: dict) -> Coin:
        return cls(denom=raw["denom"], amount=parse_amount(raw["amount"]))


@dataclass
class TxRecord:
    tx_hash: str
    height: int
    gas_used: int
    gas_wanted: int
    tx: dict = field(default_factory=dict)
    raw_log: str = ""
    code: int = 0


@dataclass
class DenomMetadata:
    base: str
    display: str = ""
    denom_units: list[tuple[str, int]] = field(default_factory=list)

    @property
    def decimals(self) -> int | None:
        """Exponent of the last (display) denom unit."""
        if not self.denom_units:
            return None
        return self.denom_units[-1][1]

    @classmethod
    def from_dict(cls, raw: dict) -> DenomMetadata:
        units = [
            (u.get("denom", ""), int(u.get("exponent", 0)))
            for u in raw.get("denom_units", [])
        ]
        return cls(base=raw.get("base", ""), display=raw.get("display", ""), denom_units=units)


class ChainProvider(Protocol):
    """What the adapter needs from a chain client."""

    async def get_balance(self, address: str) -> list[Coin]: ...

    async def get_denom_trace(self, ibc_hash: str) -> Optional[str]: ...

    async def get_height(self) -> int: ...

    async def get_transaction(self, tx_hash: str) -> Optional[TxRecord]: ...

    async def get_denom_metadata(self, denom: str) -> Optional[DenomMetadata]: ...

    async def close(self) -> None: ...


# ─── LCD implementation ──────────────────────────────────────────────────


class LCDProvider:
    """aiohttp client for a Terra LCD endpoint."""

    def __init__(self, lcd_url: str, timeout: float = 30.0):
        self.lcd_url = lcd_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_network(cls, network: NetworkConfig) -> LCDProvider:
        return cls(network.lcd_url, timeout=network.request_timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get(self, path: str, params: Optional[dict] = None) -> Optional[dict]:
        """GET *path*; ``None`` when the chain reports the object is absent."""
        session = await self._get_session()
        url = f"{self.lcd_url}{path}"
        try:
            async with session.get(url, params=params) as response:
                if response.status == 404:
                    return None
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                if isinstance(data, dict) and data.get("code") == GRPC_NOT_FOUND:
                    return None
                if response.status >= 400 or not isinstance(data, dict):
                    message = data.get("message", "") if isinstance(data, dict) else ""
                    raise ProviderError(
                        f"LCD error {response.status}: {message}".rstrip(": "),
                        path=path,
                        status=response.status,
                    )
                return data
        except aiohttp.ClientError as exc:
            raise ProviderError(f"LCD connection error: {exc}", path=path) from exc
        except asyncio.TimeoutError:
            raise ProviderError("LCD timeout", path=path) from None

    async def get_balance(self, address: str) -> list[Coin]:
        path = f"/cosmos/bank/v1beta1/balances/{quote(address, safe='')}"
        coins: list[Coin] = []
        params: dict[str, str] = {}
        while True:
            data = await self._get(path, params or None)
            if data is None:
                return coins
            coins.extend(Coin.from_dict(c) for c in data.get("balances", []))
            next_key = (data.get("pagination") or {}).get("next_key")
            if not next_key:
                return coins
            params = {"pagination.key": next_key}

    async def get_denom_trace(self, ibc_hash: str) -> Optional[str]:
        data = await self._get(f"/ibc/apps/transfer/v1/denom_traces/{quote(ibc_hash, safe='')}")
        if data is None:
            return None
        trace = data.get("denom_trace") or {}
        return trace.get("base_denom") or None

    async def get_height(self) -> int:
        data = await self._get("/cosmos/base/tendermint/v1beta1/blocks/latest")
        if data is None:
            raise ProviderError("Latest block unavailable", path="blocks/latest")
        block = data.get("block") or data.get("sdk_block") or {}
        return int(block["header"]["height"])

    async def get_transaction(self, tx_hash: str) -> Optional[TxRecord]:
        data = await self._get(f"/cosmos/tx/v1beta1/txs/{quote(tx_hash, safe='')}")
        if data is None or not data.get("tx_response"):
            return None
        resp = data["tx_response"]
        return TxRecord(
            tx_hash=resp.get("txhash", tx_hash),
            height=int(resp.get("height", 0)),
            gas_used=int(resp.get("gas_used", 0)),
            gas_wanted=int(resp.get("gas_wanted", 0)),
            tx=data.get("tx") or resp.get("tx") or {},
            raw_log=resp.get("raw_log", ""),
            code=int(resp.get("code", 0)),
        )

    async def get_denom_metadata(self, denom: str) -> Optional[DenomMetadata]:
        data = await self._get(f"/cosmos/bank/v1beta1/denoms_metadata/{quote(denom, safe='')}")
        if data is None or not data.get("metadata"):
            return None
        return DenomMetadata.from_dict(data["metadata"])

    def __repr__(self) -> str:
        return f"LCDProvider({self.lcd_url})"
