"""
Request handlers behind the Terra HTTP routes.

Handlers take an adapter and an already validated request dict and return
JSON-ready dicts; adapter errors propagate to the HTTP layer unchanged.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from terra_core.errors import TokenNotSupported

if TYPE_CHECKING:
    from terra_core.adapter import TerraAdapter
    from terra_core.balances import BalanceEntry


def _now_ms() -> int:
    return int(time.time() * 1000)


def latency(start_ms: int, end_ms: int) -> float:
    """Elapsed seconds between two millisecond timestamps."""
    return (end_ms - start_ms) / 1000


def to_terra_balances(
    balances: dict[str, BalanceEntry],
    token_symbols: list[str],
    registry_symbols: dict[str, str] | None = None,
) -> dict[str, str]:
    """Formatted balance for each requested symbol (``"0.0"`` when absent).

    *registry_symbols* maps a requested symbol to the registry's spelling of
    it, so ``"luna"`` finds the ``"LUNA"`` entry.
    """
    registry_symbols = registry_symbols or {}
    wallet_balances: dict[str, str] = {}
    for symbol in token_symbols:
        entry = balances.get(registry_symbols.get(symbol, symbol))
        wallet_balances[symbol] = entry.to_string() if entry is not None else "0.0"
    return wallet_balances


async def balances(adapter: TerraAdapter, req: dict[str, Any]) -> dict[str, Any]:
    init_time = _now_ms()
    token_symbols: list[str] = req["tokenSymbols"]

    registry_symbols: dict[str, str] = {}
    for symbol in token_symbols:
        token = adapter.get_token_for_symbol(symbol)
        if token is None:
            raise TokenNotSupported(symbol)
        registry_symbols[symbol] = token.symbol

    wallet = await adapter.get_wallet(req["address"])
    all_balances = await adapter.get_balances(wallet)

    return {
        "network": adapter.chain,
        "timestamp": init_time,
        "latency": latency(init_time, _now_ms()),
        "balances": to_terra_balances(all_balances, token_symbols, registry_symbols),
    }


async def poll(adapter: TerraAdapter, req: dict[str, Any]) -> dict[str, Any]:
    init_time = _now_ms()
    tx_hash: str = req["txHash"]
    transaction = await adapter.get_transaction(tx_hash.removeprefix("0x").upper())
    current_block = await adapter.get_current_block_number()

    return {
        "network": adapter.chain,
        "timestamp": init_time,
        "latency": latency(init_time, _now_ms()),
        "txHash": tx_hash,
        "currentBlock": current_block,
        "txBlock": transaction.height,
        "gasUsed": transaction.gas_used,
        "gasWanted": transaction.gas_wanted,
        "txData": transaction.tx,
    }


async def status(adapter: TerraAdapter) -> dict[str, Any]:
    net = adapter.network_config
    return {
        "chain": "terra",
        "network": adapter.chain,
        "chainId": net.chain_id,
        "rpcUrl": net.lcd_url,
        "currentBlockNumber": await adapter.get_current_block_number(),
        "nativeCurrency": adapter.native_token_symbol,
        "gasPrice": adapter.gas_price,
    }
