#!/usr/bin/env python3
"""
Terra Gateway Runner. Serves the Terra adapter over HTTP:
  - Loads the token list for the selected network
  - Decrypts wallets from the keystore on each balance request
  - Logs the request count on a timer

Usage:
    python run_gateway.py --config terra.toml --network mainnet --port 15888
    python run_gateway.py --config terra.toml --add-wallet

Environment variables (alternative to flags):
    TERRA_NETWORK, TERRA_LCD_URL, TERRA_PASSPHRASE, TERRA_API_PORT, TERRA_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from terra_core.adapter import AdapterManager  # noqa: E402
from terra_core.api import APIServer  # noqa: E402
from terra_core.config import load_config  # noqa: E402
from terra_core.errors import TerraError  # noqa: E402
from terra_core.logging_config import setup_logging  # noqa: E402
from terra_core.wallet import PassphraseHolder  # noqa: E402

logger = logging.getLogger("gateway")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Terra Gateway")
    p.add_argument("--config", default=None, help="Path to terra.toml config file")
    p.add_argument("--network", default=None, help="Terra network name (mainnet, testnet, ...)")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument(
        "--add-wallet",
        action="store_true",
        help="Encrypt a private key into the keystore, print its address and exit",
    )
    return p.parse_args()


def add_wallet(manager: AdapterManager) -> None:
    """Interactive keystore import for the selected network."""
    adapter = manager.get()
    private_key = getpass.getpass("Private key (hex): ")
    try:
        address = adapter.wallets.add_wallet(private_key, adapter.address_prefix)
    except (TerraError, ValueError) as exc:
        logger.error(f"Could not add wallet: {exc}")
        raise SystemExit(1) from None
    print(address)


async def main() -> None:
    args = parse_args()

    cfg = load_config(args.config)
    if args.network:
        cfg.terra.network = args.network
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port

    passphrase = PassphraseHolder(cfg.wallet.passphrase or None)
    secret = passphrase.read_passphrase()
    setup_logging(
        cfg.logging.level,
        cfg.logging.format,
        cfg.logging.file,
        secrets=[secret] if secret else (),
    )

    manager = AdapterManager(cfg, passphrase=passphrase)
    if args.add_wallet:
        try:
            add_wallet(manager)
        finally:
            await manager.close_all()
        return

    adapter = manager.get(cfg.terra.network)
    if secret is None:
        logger.warning(
            "No keystore passphrase configured; balance requests will fail. "
            "Set TERRA_PASSPHRASE or [wallet] passphrase."
        )

    try:
        await adapter.init()
    except Exception:
        logger.error("Token list unavailable at startup; retrying on first request")

    api = APIServer(manager, cfg.terra.network, cfg.api.host, cfg.api.port, api_config=cfg.api)
    await api.start()

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await api.stop()
        await manager.close_all()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
