"""
Shared pytest fixtures for the Terra connector test suite.
"""

from __future__ import annotations

import json
import sys
from collections import defaultdict
from pathlib import Path

import pytest

# Make terra_core importable when the suite runs from a plain checkout
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from terra_core.config import GatewayConfig  # noqa: E402
from terra_core.provider import Coin, DenomMetadata, TxRecord  # noqa: E402
from terra_core.tokens import Token, TokenRegistry  # noqa: E402

# Well-formed fixture key and address
PRIVATE_KEY = "b6dd181dfa0023013b2479c109e483cb8dc3c20d6fdae6b2443be147c11e5220"  # noqa: mock
KNOWN_ADDRESS = "terra1asw90833pfma5nhejz4edlzs6fth04ze8n378q"

USDC_BASE = "ibc/B3504E092456BA618CC28AC671A71FB08C6CA0FD0BE7C8A5B5A3E2DD933CC9E4"

SAMPLE_TOKENS = [
    {"base": "uluna", "name": "Terra", "symbol": "LUNA", "decimals": 6},
    {"base": USDC_BASE, "name": "Axelar USDC", "symbol": "axlUSDC", "decimals": 6},
]

TX_HASH = "A" * 64


class FakeProvider:
    """In-memory chain provider with per-endpoint call counters."""

    def __init__(
        self,
        balances: dict[str, list[Coin]] | None = None,
        traces: dict[str, str] | None = None,
        metadata: dict[str, DenomMetadata] | None = None,
        height: int = 1000,
        txs: dict[str, TxRecord] | None = None,
    ):
        self.balances = balances or {}
        self.traces = traces or {}
        self.metadata = metadata or {}
        self.height = height
        self.txs = txs or {}
        self.calls: dict[str, int] = defaultdict(int)
        self.closed = False

    async def get_balance(self, address: str) -> list[Coin]:
        self.calls["balance"] += 1
        return list(self.balances.get(address, []))

    async def get_denom_trace(self, ibc_hash: str) -> str | None:
        self.calls["denom_trace"] += 1
        return self.traces.get(ibc_hash)

    async def get_height(self) -> int:
        self.calls["height"] += 1
        return self.height

    async def get_transaction(self, tx_hash: str) -> TxRecord | None:
        self.calls["transaction"] += 1
        return self.txs.get(tx_hash)

    async def get_denom_metadata(self, denom: str) -> DenomMetadata | None:
        self.calls["metadata"] += 1
        return self.metadata.get(denom)

    async def close(self) -> None:
        self.closed = True


def write_token_list(path: Path, tokens: list[dict] | None = None) -> Path:
    path.write_text(json.dumps({"tokens": tokens if tokens is not None else SAMPLE_TOKENS}))
    return path


def make_config(tmp_path: Path, token_list: Path | None = None, **terra) -> GatewayConfig:
    """Gateway config pointing at files under *tmp_path*, metrics timer off."""
    cfg = GatewayConfig()
    cfg.terra.metrics_log_interval = 0
    for key, value in terra.items():
        setattr(cfg.terra, key, value)
    source = token_list if token_list is not None else tmp_path / "tokens.json"
    for net in cfg.terra.networks.values():
        net.token_list_source = str(source)
        net.token_list_type = "FILE"
    cfg.wallet.wallet_dir = str(tmp_path / "wallets")
    return cfg


@pytest.fixture(autouse=True)
def _clean_terra_env(monkeypatch):
    """Keep TERRA_* variables from the developer's shell out of the tests."""
    for name in (
        "TERRA_NETWORK",
        "TERRA_LCD_URL",
        "TERRA_TOKEN_LIST_SOURCE",
        "TERRA_TOKEN_LIST_TYPE",
        "TERRA_WALLET_DIR",
        "TERRA_PASSPHRASE",
        "TERRA_API_PORT",
        "TERRA_LOG_LEVEL",
        "TERRA_LOG_FMT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def tokens():
    """Parsed sample token list."""
    return [Token.from_dict(t) for t in SAMPLE_TOKENS]


@pytest.fixture
def registry(tokens):
    """Registry pre-populated with the sample tokens."""
    return TokenRegistry(tokens)


@pytest.fixture
def token_list_file(tmp_path):
    """Sample token list written to disk."""
    return write_token_list(tmp_path / "tokens.json")


@pytest.fixture
def config(tmp_path, token_list_file):
    return make_config(tmp_path, token_list_file)
