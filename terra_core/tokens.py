"""
Token registry for the Terra adapter.

A token list is a JSON document ``{"tokens": [{base, name, symbol,
decimals}, ...]}`` served either over HTTP(S) or read from a local file.
The registry keeps an immutable snapshot of the list plus two lookup maps
(symbol and base denom) and swaps the whole snapshot in one assignment on
every successful :meth:`TokenRegistry.load`, so a failed load never leaves a
half-built registry behind.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import aiohttp

logger = logging.getLogger("terra_tokens")


class TokenListType(str, Enum):
    URL = "URL"
    FILE = "FILE"


@dataclass(frozen=True)
class Token:
    base: str
    name: str
    symbol: str
    decimals: int

    @classmethod
    def from_dict(cls, raw: Any) -> Token:
        if not isinstance(raw, dict):
            raise ValueError(f"Token entry must be an object, got {type(raw).__name__}")
        try:
            base = raw["base"]
            name = raw["name"]
            symbol = raw["symbol"]
            decimals = raw["decimals"]
        except KeyError as exc:
            raise ValueError(f"Token entry missing field {exc.args[0]!r}") from None
        if not all(isinstance(v, str) and v for v in (base, symbol)):
            raise ValueError(f"Token entry has empty base/symbol: {raw!r}")
        if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
            raise ValueError(f"Token {symbol} has invalid decimals {decimals!r}")
        return cls(base=base, name=str(name), symbol=symbol, decimals=decimals)

    def to_dict(self) -> dict:
        return {
            "base": self.base,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
        }


@dataclass(frozen=True)
class _Snapshot:
    tokens: tuple[Token, ...]
    by_symbol: Mapping[str, Token]
    by_base: Mapping[str, Token]


_EMPTY = _Snapshot((), MappingProxyType({}), MappingProxyType({}))


def parse_token_list(payload: Any) -> list[Token]:
    """Parse a decoded token-list payload into ``Token`` records."""
    if isinstance(payload, dict):
        if "tokens" not in payload:
            raise ValueError("Token list payload has no 'tokens' key")
        entries = payload["tokens"]
    else:
        entries = payload
    if not isinstance(entries, list):
        raise ValueError("Token list 'tokens' must be an array")
    return [Token.from_dict(e) for e in entries]


async def fetch_token_list(
    source: str,
    source_type: TokenListType | str,
    timeout: float = 30.0,
) -> list[Token]:
    """Fetch and parse a token list from a URL or a local file."""
    source_type = TokenListType(source_type)
    if source_type is TokenListType.URL:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                source,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                response.raise_for_status()
                payload = await response.json(content_type=None)
    else:
        with open(Path(source), encoding="utf-8") as f:
            payload = json.load(f)
    return parse_token_list(payload)


def _build_snapshot(tokens: list[Token]) -> _Snapshot:
    by_symbol: dict[str, Token] = {}
    by_base: dict[str, Token] = {}
    for token in tokens:
        key = token.symbol.upper()
        if key in by_symbol:
            raise ValueError(f"Duplicate token symbol {token.symbol!r} in token list")
        if token.base in by_base:
            raise ValueError(f"Duplicate base denom {token.base!r} in token list")
        by_symbol[key] = token
        by_base[token.base] = token
    return _Snapshot(tuple(tokens), MappingProxyType(by_symbol), MappingProxyType(by_base))


class TokenRegistry:
    """Loaded token list with symbol / base-denom indexes."""

    def __init__(self, tokens: list[Token] | None = None):
        self._snapshot = _build_snapshot(tokens) if tokens else _EMPTY

    async def load(
        self,
        source: str,
        source_type: TokenListType | str,
        timeout: float = 30.0,
    ) -> None:
        """Replace the registry contents with the list at *source*.

        Fetch, parse and index errors propagate unchanged; the current
        snapshot is only replaced once the new one is complete.
        """
        tokens = await fetch_token_list(source, source_type, timeout=timeout)
        snapshot = _build_snapshot(tokens)
        self._snapshot = snapshot
        logger.info(f"Loaded {len(snapshot.tokens)} tokens from {source}")

    @property
    def tokens(self) -> tuple[Token, ...]:
        return self._snapshot.tokens

    def get_by_symbol(self, symbol: str) -> Token | None:
        return self._snapshot.by_symbol.get(symbol.upper())

    def get_by_base(self, denom: str) -> Token | None:
        return self._snapshot.by_base.get(denom)

    def __len__(self) -> int:
        return len(self._snapshot.tokens)

    def __repr__(self) -> str:
        return f"TokenRegistry({len(self)} tokens)"
