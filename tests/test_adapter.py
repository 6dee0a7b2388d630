"""
Tests for the Terra adapter lifecycle and the adapter manager:
  - single-flight token-list initialisation
  - retry after a failed load
  - request metrics
  - query delegation and TransactionNotFound
  - close / deregistration
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import PRIVATE_KEY, TX_HASH, FakeProvider, make_config, write_token_list
from terra_core.adapter import AdapterManager, AdapterState, SingleFlight, TerraAdapter
from terra_core.errors import TransactionNotFound
from terra_core.provider import Coin, TxRecord
from terra_core.tokens import TokenRegistry
from terra_core.wallet import PassphraseHolder


class _CountingRegistry(TokenRegistry):
    """Registry whose loads are counted and take a little while."""

    def __init__(self):
        super().__init__()
        self.loads = 0

    async def load(self, source, source_type, timeout=30.0):
        self.loads += 1
        await asyncio.sleep(0.01)
        await super().load(source, source_type, timeout=timeout)


def _adapter(config, provider=None, passphrase="", registry=None) -> TerraAdapter:
    return TerraAdapter(
        config.terra.network,
        config,
        provider or FakeProvider(),
        PassphraseHolder(passphrase),
        registry=registry,
    )


# ═══════════════════════════════════════════════════════════════════
#  SingleFlight
# ═══════════════════════════════════════════════════════════════════

class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_runs_once_for_concurrent_callers(self):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)

        flight = SingleFlight(work)
        await asyncio.gather(*(flight.run() for _ in range(5)))
        assert calls == 1
        assert flight.done
        await flight.run()
        assert calls == 1

    @pytest.mark.asyncio
    async def test_resets_after_failure(self):
        attempts = 0

        async def work():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("first attempt fails")

        flight = SingleFlight(work)
        with pytest.raises(RuntimeError):
            await flight.run()
        assert not flight.done
        assert not flight.in_flight
        await flight.run()
        assert flight.done
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_failed_task_before_callback_starts_again(self):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1

        flight = SingleFlight(work)
        stale = asyncio.get_running_loop().create_future()
        stale.set_exception(RuntimeError("earlier load failed"))
        flight._task = stale
        await flight.run()
        assert calls == 1
        assert flight.done


# ═══════════════════════════════════════════════════════════════════
#  Initialisation
# ═══════════════════════════════════════════════════════════════════

class TestAdapterInit:

    @pytest.mark.asyncio
    async def test_starts_uninitialized(self, config):
        adapter = _adapter(config)
        assert adapter.state is AdapterState.UNINITIALIZED
        assert not adapter.ready()
        assert len(adapter.registry) == 0

    @pytest.mark.asyncio
    async def test_init_loads_tokens(self, config):
        adapter = _adapter(config)
        await adapter.init()
        assert adapter.ready()
        assert adapter.state is AdapterState.READY
        assert adapter.get_token_for_symbol("luna").base == "uluna"

    @pytest.mark.asyncio
    async def test_concurrent_init_loads_once(self, config):
        registry = _CountingRegistry()
        adapter = _adapter(config, registry=registry)
        await asyncio.gather(*(adapter.init() for _ in range(10)))
        assert registry.loads == 1
        assert adapter.ready()

        await adapter.init()
        assert registry.loads == 1

    @pytest.mark.asyncio
    async def test_state_is_initializing_while_loading(self, config):
        adapter = _adapter(config, registry=_CountingRegistry())
        task = asyncio.ensure_future(adapter.init())
        await asyncio.sleep(0)
        assert adapter.state is AdapterState.INITIALIZING
        assert not adapter.ready()
        await task
        assert adapter.ready()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_load(self, config):
        registry = _CountingRegistry()
        adapter = _adapter(config, registry=registry)
        first = asyncio.ensure_future(adapter.init())
        second = asyncio.ensure_future(adapter.init())
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        await second
        assert adapter.ready()
        assert registry.loads == 1

    @pytest.mark.asyncio
    async def test_failed_init_can_be_retried(self, tmp_path):
        token_list = tmp_path / "late.json"
        cfg = make_config(tmp_path, token_list)
        adapter = _adapter(cfg)

        with pytest.raises(FileNotFoundError):
            await adapter.init()
        assert adapter.state is AdapterState.UNINITIALIZED
        assert not adapter.ready()

        write_token_list(token_list)
        await adapter.init()
        assert adapter.ready()

    @pytest.mark.asyncio
    async def test_late_caller_after_failure_leaves_uninitialized(self, tmp_path):
        cfg = make_config(tmp_path, tmp_path / "missing.json")
        adapter = _adapter(cfg)
        stale = asyncio.get_running_loop().create_future()
        stale.set_exception(FileNotFoundError("missing.json"))
        adapter._init_flight._task = stale
        with pytest.raises(FileNotFoundError):
            await adapter.init()
        assert adapter.state is AdapterState.UNINITIALIZED
        assert not adapter._init_flight.in_flight

    @pytest.mark.asyncio
    async def test_late_caller_after_failure_retries(self, tmp_path, token_list_file):
        adapter = _adapter(make_config(tmp_path, token_list_file))
        stale = asyncio.get_running_loop().create_future()
        stale.set_exception(FileNotFoundError("earlier attempt"))
        adapter._init_flight._task = stale
        await adapter.init()
        assert adapter.ready()

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self, tmp_path):
        cfg = make_config(tmp_path, tmp_path / "missing.json")
        registry = _CountingRegistry()
        adapter = _adapter(cfg, registry=registry)
        results = await asyncio.gather(
            *(adapter.init() for _ in range(3)), return_exceptions=True,
        )
        assert all(isinstance(r, FileNotFoundError) for r in results)
        assert registry.loads == 1

    @pytest.mark.asyncio
    async def test_failed_load_is_logged(self, tmp_path, caplog):
        cfg = make_config(tmp_path, tmp_path / "missing.json")
        adapter = _adapter(cfg)
        with caplog.at_level(logging.ERROR, logger="terra_adapter"):
            with pytest.raises(FileNotFoundError):
                await adapter.init()
        assert "Token list load failed" in caplog.text


# ═══════════════════════════════════════════════════════════════════
#  Metrics
# ═══════════════════════════════════════════════════════════════════

class TestMetrics:

    def test_request_counter(self, config):
        adapter = _adapter(config)
        adapter.request_counter({"action": "request"})
        adapter.request_counter({"action": "request"})
        adapter.request_counter({"action": "other"})
        assert adapter.request_count == 2

    def test_metric_logger_logs_and_resets(self, tmp_path, token_list_file, caplog):
        cfg = make_config(tmp_path, token_list_file, metrics_log_interval=300.0)
        adapter = _adapter(cfg)
        for _ in range(3):
            adapter.request_counter({"action": "request"})
        with caplog.at_level(logging.INFO, logger="terra_adapter"):
            adapter.metric_logger()
        assert "3 request(s) sent in last 300 seconds." in caplog.text
        assert adapter.request_count == 0

    @pytest.mark.asyncio
    async def test_timer_fires_after_init(self, tmp_path, token_list_file, caplog):
        cfg = make_config(tmp_path, token_list_file, metrics_log_interval=0.01)
        adapter = _adapter(cfg)
        adapter.request_counter({"action": "request"})
        with caplog.at_level(logging.INFO, logger="terra_adapter"):
            await adapter.init()
            await asyncio.sleep(0.05)
        assert "request(s) sent in last" in caplog.text
        assert adapter.request_count == 0
        await adapter.close()

    @pytest.mark.asyncio
    async def test_no_timer_when_interval_is_zero(self, config):
        adapter = _adapter(config)
        await adapter.init()
        assert adapter._metric_task is None

    @pytest.mark.asyncio
    async def test_close_cancels_timer(self, tmp_path, token_list_file):
        cfg = make_config(tmp_path, token_list_file, metrics_log_interval=60.0)
        provider = FakeProvider()
        adapter = _adapter(cfg, provider)
        await adapter.init()
        task = adapter._metric_task
        assert task is not None and not task.done()
        await adapter.close()
        assert task.cancelled()
        assert adapter._metric_task is None
        assert provider.closed


# ═══════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════

class TestAdapterQueries:

    def test_properties(self, config):
        adapter = _adapter(config)
        assert adapter.chain == "mainnet"
        assert adapter.native_token_symbol == "LUNA"
        assert adapter.gas_price == 0.15
        assert adapter.network_config.chain_id == "phoenix-1"

    @pytest.mark.asyncio
    async def test_current_block(self, config):
        adapter = _adapter(config, FakeProvider(height=4242))
        assert await adapter.get_current_block_number() == 4242

    @pytest.mark.asyncio
    async def test_transaction_found(self, config):
        tx = TxRecord(tx_hash=TX_HASH, height=10, gas_used=5, gas_wanted=7)
        adapter = _adapter(config, FakeProvider(txs={TX_HASH: tx}))
        assert await adapter.get_transaction(TX_HASH) is tx

    @pytest.mark.asyncio
    async def test_transaction_not_found(self, config):
        adapter = _adapter(config)
        with pytest.raises(TransactionNotFound) as exc:
            await adapter.get_transaction(TX_HASH)
        assert exc.value.message == "Transaction not found"
        assert exc.value.status_code == 404

    def test_wallet_from_private_key(self, config):
        adapter = _adapter(config)
        wallet = adapter.get_wallet_from_private_key(PRIVATE_KEY)
        assert wallet.address.startswith("terra1")

    @pytest.mark.asyncio
    async def test_wallet_from_keystore_and_balances(self, config):
        provider = FakeProvider()
        adapter = _adapter(config, provider, passphrase="pw")
        address = adapter.wallets.add_wallet(PRIVATE_KEY)
        assert adapter.wallets.wallet_dir.name == "terra"

        provider.balances[address] = [Coin("uluna", 3_000_000)]
        await adapter.init()
        wallet = await adapter.get_wallet(address)
        assert wallet.address == address
        balances = await adapter.get_balances(wallet)
        assert balances["LUNA"].to_string() == "3.0"


# ═══════════════════════════════════════════════════════════════════
#  AdapterManager
# ═══════════════════════════════════════════════════════════════════

class TestAdapterManager:

    def _manager(self, config, providers: list | None = None) -> AdapterManager:
        def factory(_net):
            provider = FakeProvider()
            if providers is not None:
                providers.append(provider)
            return provider

        return AdapterManager(config, provider_factory=factory, passphrase=PassphraseHolder("pw"))

    def test_get_is_cached(self, config):
        manager = self._manager(config)
        assert manager.get() is manager.get("mainnet")

    def test_networks_are_separate(self, config):
        manager = self._manager(config)
        mainnet = manager.get("mainnet")
        testnet = manager.get("testnet")
        assert mainnet is not testnet
        assert testnet.network_config.chain_id == "pisco-1"
        assert set(manager.connected()) == {"mainnet", "testnet"}

    def test_unknown_network(self, config):
        manager = self._manager(config)
        with pytest.raises(KeyError):
            manager.get("devnet")

    @pytest.mark.asyncio
    async def test_close_deregisters(self, config):
        providers: list[FakeProvider] = []
        manager = self._manager(config, providers)
        first = manager.get()
        await manager.close("mainnet")
        assert manager.connected() == {}
        assert providers[0].closed
        assert manager.get() is not first

    @pytest.mark.asyncio
    async def test_close_all(self, config):
        providers: list[FakeProvider] = []
        manager = self._manager(config, providers)
        manager.get("mainnet")
        manager.get("testnet")
        await manager.close_all()
        assert manager.connected() == {}
        assert all(p.closed for p in providers)

    @pytest.mark.asyncio
    async def test_close_unknown_network_is_noop(self, config):
        manager = self._manager(config)
        await manager.close("mainnet")
        assert manager.connected() == {}
