"""
Terra chain adapter and its lifecycle manager.

:class:`TerraAdapter` composes the token registry, wallet factory and
balance resolver over one :class:`ChainProvider`, and loads the token list
lazily: the first :meth:`TerraAdapter.init` starts the load, every caller
arriving before it finishes awaits the same task, and ``READY`` is terminal.

:class:`AdapterManager` owns one adapter per network name.  It is created
once at process start and handed to request handlers; ``close`` cancels the
adapter's metrics task, closes its provider and drops it from the manager.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Coroutine, Optional

from terra_core.balances import BalanceEntry, BalanceResolver
from terra_core.config import GatewayConfig, NetworkConfig
from terra_core.errors import TransactionNotFound
from terra_core.provider import ChainProvider, LCDProvider, TxRecord
from terra_core.tokens import Token, TokenRegistry
from terra_core.wallet import PassphraseHolder, WalletFactory, WalletHandle

logger = logging.getLogger("terra_adapter")

CHAIN_NAME = "terra"


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class SingleFlight:
    """Run a coroutine at most once at a time and share its outcome.

    The first :meth:`run` starts the task; concurrent callers await the same
    task.  Each waiter is shielded, so cancelling one caller does not cancel
    the shared work.  After a failure the flight resets and the next
    :meth:`run` starts again; after a success :attr:`done` stays True and
    :meth:`run` returns immediately.
    """

    def __init__(self, factory: Callable[[], Coroutine[Any, Any, None]]):
        self._factory = factory
        self._task: Optional[asyncio.Task] = None
        self.done = False

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        if self.done:
            return
        if self._task is not None and self._task.done():
            # finished before its done callback ran
            self._on_done(self._task)
            if self.done:
                return
        if self._task is None:
            self._task = asyncio.create_task(self._factory())
            self._task.add_done_callback(self._on_done)
        await asyncio.shield(self._task)

    def _on_done(self, task: asyncio.Future) -> None:
        if task is not self._task:
            return
        if task.cancelled() or task.exception() is not None:
            self._task = None
        else:
            self.done = True


class TerraAdapter:
    """Query surface for one Terra network."""

    def __init__(
        self,
        network: str,
        config: GatewayConfig,
        provider: ChainProvider,
        passphrase: PassphraseHolder,
        registry: TokenRegistry | None = None,
        on_close: Callable[[TerraAdapter], None] | None = None,
    ):
        terra_cfg = config.terra
        self._chain = network
        self.network_config: NetworkConfig = terra_cfg.network_config(network)
        self.provider = provider
        self.registry = registry if registry is not None else TokenRegistry()
        self.address_prefix = terra_cfg.address_prefix
        self.wallets = WalletFactory(Path(config.wallet.wallet_dir) / CHAIN_NAME, passphrase)
        self.resolver = BalanceResolver(
            self.registry, provider, trace_cache_ttl=terra_cfg.trace_cache_ttl,
        )

        self._native_token_symbol = terra_cfg.native_currency_symbol
        self._gas_price = terra_cfg.manual_gas_price
        self._metrics_log_interval = terra_cfg.metrics_log_interval
        self._request_count = 0
        self._metric_task: Optional[asyncio.Task] = None
        self._on_close = on_close

        self._state = AdapterState.UNINITIALIZED
        self._init_flight = SingleFlight(self._load_tokens)

    # ── lifecycle ────────────────────────────────────────────────

    @property
    def state(self) -> AdapterState:
        return self._state

    def ready(self) -> bool:
        return self._state is AdapterState.READY

    async def init(self) -> None:
        """Load the token list once; concurrent callers share the load."""
        if self._state is AdapterState.READY:
            return
        self._start_metric_timer()
        self._state = AdapterState.INITIALIZING
        try:
            await self._init_flight.run()
        finally:
            if self._state is not AdapterState.READY and not self._init_flight.in_flight:
                self._state = AdapterState.UNINITIALIZED

    async def _load_tokens(self) -> None:
        net = self.network_config
        try:
            await self.registry.load(
                net.token_list_source,
                net.token_list_type,
                timeout=net.request_timeout,
            )
        except Exception:
            self._state = AdapterState.UNINITIALIZED
            logger.exception(
                f"Token list load failed for {self._chain}", extra={"network": self._chain},
            )
            raise
        self._state = AdapterState.READY
        logger.info(
            f"Terra adapter ready: {self._chain} ({net.chain_id})", extra={"network": self._chain},
        )

    async def close(self) -> None:
        if self._metric_task is not None:
            self._metric_task.cancel()
            try:
                await self._metric_task
            except asyncio.CancelledError:
                pass
            self._metric_task = None
        await self.provider.close()
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None
        logger.info(f"Terra adapter closed: {self._chain}", extra={"network": self._chain})

    # ── metrics ──────────────────────────────────────────────────

    def _start_metric_timer(self) -> None:
        if self._metric_task is None and self._metrics_log_interval > 0:
            self._metric_task = asyncio.create_task(self._metric_loop())

    async def _metric_loop(self) -> None:
        while True:
            await asyncio.sleep(self._metrics_log_interval)
            self.metric_logger()

    def request_counter(self, msg: dict[str, Any]) -> None:
        if msg.get("action") == "request":
            self._request_count += 1

    def metric_logger(self) -> None:
        logger.info(
            f"{self._request_count} request(s) sent in last "
            f"{self._metrics_log_interval:g} seconds."
        )
        self._request_count = 0

    # ── properties ───────────────────────────────────────────────

    @property
    def chain(self) -> str:
        return self._chain

    @property
    def native_token_symbol(self) -> str:
        return self._native_token_symbol

    @property
    def gas_price(self) -> float:
        return self._gas_price

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def metrics_log_interval(self) -> float:
        return self._metrics_log_interval

    # ── queries ──────────────────────────────────────────────────

    def get_token_for_symbol(self, symbol: str) -> Token | None:
        return self.registry.get_by_symbol(symbol)

    def get_wallet_from_private_key(self, private_key: str) -> WalletHandle:
        return self.wallets.from_private_key(private_key, self.address_prefix)

    async def get_wallet(self, address: str) -> WalletHandle:
        """Rebuild the wallet for *address* from the encrypted keystore."""
        # PBKDF2 is CPU-bound; keep it off the event loop
        return await asyncio.to_thread(
            self.wallets.from_encrypted_file, address, self.address_prefix,
        )

    async def get_balances(self, wallet: WalletHandle | str) -> dict[str, BalanceEntry]:
        return await self.resolver.get_balances(wallet)

    async def get_current_block_number(self) -> int:
        return await self.provider.get_height()

    async def get_transaction(self, tx_hash: str) -> TxRecord:
        transaction = await self.provider.get_transaction(tx_hash)
        if transaction is None:
            raise TransactionNotFound(tx_hash)
        return transaction

    def __repr__(self) -> str:
        return f"TerraAdapter({self._chain}, {self._state.value})"


ProviderFactory = Callable[[NetworkConfig], ChainProvider]


class AdapterManager:
    """Owns one :class:`TerraAdapter` per network name."""

    def __init__(
        self,
        config: GatewayConfig,
        provider_factory: ProviderFactory = LCDProvider.from_network,
        passphrase: PassphraseHolder | None = None,
    ):
        self.config = config
        self.provider_factory = provider_factory
        self.passphrase = passphrase or PassphraseHolder(config.wallet.passphrase or None)
        self._adapters: dict[str, TerraAdapter] = {}

    def get(self, network: str | None = None) -> TerraAdapter:
        """Return the adapter for *network*, constructing it on first use."""
        name = network or self.config.terra.network
        adapter = self._adapters.get(name)
        if adapter is None:
            net_cfg = self.config.terra.network_config(name)
            adapter = TerraAdapter(
                name,
                self.config,
                self.provider_factory(net_cfg),
                self.passphrase,
                on_close=self._deregister,
            )
            self._adapters[name] = adapter
            logger.info(f"Terra adapter created: {name}")
        return adapter

    def connected(self) -> dict[str, TerraAdapter]:
        return dict(self._adapters)

    def _deregister(self, adapter: TerraAdapter) -> None:
        if self._adapters.get(adapter.chain) is adapter:
            del self._adapters[adapter.chain]

    async def close(self, network: str) -> None:
        adapter = self._adapters.get(network)
        if adapter is not None:
            await adapter.close()

    async def close_all(self) -> None:
        for adapter in list(self._adapters.values()):
            await adapter.close()
