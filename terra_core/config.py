"""
TOML-based configuration for the Terra gateway.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from terra_core.config import load_config
    cfg = load_config("terra.toml")
    net = cfg.terra.network_config()      # the selected network
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class NetworkConfig:
    """Endpoints and token list for one Terra network."""
    name: str = "mainnet"
    chain_id: str = "phoenix-1"
    lcd_url: str = "https://phoenix-lcd.terra.dev"
    token_list_type: str = "FILE"          # "URL" or "FILE"
    token_list_source: str = "conf/lists/terra_tokens.json"
    request_timeout: float = 30.0


def _default_networks() -> dict[str, NetworkConfig]:
    return {
        "mainnet": NetworkConfig(),
        "testnet": NetworkConfig(
            name="testnet",
            chain_id="pisco-1",
            lcd_url="https://pisco-lcd.terra.dev",
            token_list_source="conf/lists/terra_tokens_testnet.json",
        ),
    }


@dataclass
class TerraConfig:
    """Chain-level settings shared by every network."""
    network: str = "mainnet"
    native_currency_symbol: str = "LUNA"
    manual_gas_price: float = 0.15
    address_prefix: str = "terra"
    metrics_log_interval: float = 300.0    # seconds between request-count logs
    trace_cache_ttl: float = 3600.0        # IBC denom-trace cache lifetime
    networks: dict[str, NetworkConfig] = field(default_factory=_default_networks)

    def network_config(self, name: str | None = None) -> NetworkConfig:
        """Return the config for *name* (default: the selected network)."""
        key = name or self.network
        if key not in self.networks:
            raise KeyError(f"Unknown Terra network: {key}")
        return self.networks[key]


@dataclass
class WalletConfig:
    """Encrypted keystore location and passphrase.

    Key files live under ``<wallet_dir>/terra/<address>.json``.  The
    passphrase is normally supplied through ``TERRA_PASSPHRASE`` rather than
    written into the TOML file.
    """
    wallet_dir: str = "conf/wallets"
    passphrase: str = ""


@dataclass
class APIConfig:
    """REST API settings."""
    host: str = "127.0.0.1"
    port: int = 15888
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    max_body_bytes: int = 1_048_576    # 1 MiB max request body


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class GatewayConfig:
    """Top-level configuration container."""
    terra: TerraConfig = field(default_factory=TerraConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _merge_networks(cfg: TerraConfig, raw: dict[str, Any]) -> None:
    """Merge ``[terra.networks.<name>]`` tables, creating unknown networks."""
    for name, section in raw.items():
        if not isinstance(section, dict):
            continue
        net = cfg.networks.get(name)
        if net is None:
            net = NetworkConfig(name=name)
            cfg.networks[name] = net
        _merge(net, section)
        net.name = name


def load_config(path: str | None = None) -> GatewayConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        TERRA_NETWORK            -> terra.network
        TERRA_LCD_URL            -> terra.networks.<network>.lcd_url
        TERRA_TOKEN_LIST_SOURCE  -> terra.networks.<network>.token_list_source
        TERRA_TOKEN_LIST_TYPE    -> terra.networks.<network>.token_list_type
        TERRA_WALLET_DIR         -> wallet.wallet_dir
        TERRA_PASSPHRASE         -> wallet.passphrase
        TERRA_API_PORT           -> api.port
        TERRA_LOG_LEVEL          -> logging.level
        TERRA_LOG_FMT            -> logging.format
    """
    cfg = GatewayConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            terra_raw = dict(data.get("terra", {}))
            networks_raw = terra_raw.pop("networks", {})
            _merge(cfg.terra, terra_raw)
            _merge_networks(cfg.terra, networks_raw)
            for section_name, section_dc in [
                ("wallet", cfg.wallet),
                ("api", cfg.api),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("TERRA_NETWORK"):
        cfg.terra.network = v
        if v not in cfg.terra.networks:
            cfg.terra.networks[v] = NetworkConfig(name=v)
    net = cfg.terra.networks.get(cfg.terra.network)
    if net is not None:
        if v := os.environ.get("TERRA_LCD_URL"):
            net.lcd_url = v
        if v := os.environ.get("TERRA_TOKEN_LIST_SOURCE"):
            net.token_list_source = v
        if v := os.environ.get("TERRA_TOKEN_LIST_TYPE"):
            net.token_list_type = v.upper()
    if v := os.environ.get("TERRA_WALLET_DIR"):
        cfg.wallet.wallet_dir = v
    if v := os.environ.get("TERRA_PASSPHRASE"):
        cfg.wallet.passphrase = v
    if v := os.environ.get("TERRA_API_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("TERRA_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("TERRA_LOG_FMT"):
        cfg.logging.format = v

    return cfg
