"""
REST / HTTP API server for the Terra gateway.

Built on ``aiohttp``.

Endpoints
---------
GET  /health              Liveness + adapter state
GET  /terra/status        Network, chain id, current block
POST /terra/balances      Balances for ``{address, tokenSymbols}``
POST /terra/poll          Transaction status for ``{txHash}``

Middleware
----------
- Error mapping: ``TerraError`` → JSON body with its status code; a failed
  token-list load → 503.
- Readiness: every ``/terra/*`` request awaits ``adapter.init()`` and is
  counted for the periodic request-count log.
- Per-IP token-bucket rate limiter (``rate_limit_rpm``, 0 = unlimited).

Usage:
    api = APIServer(manager, "mainnet", host="127.0.0.1", port=15888)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING

import aiohttp
from aiohttp import web

from terra_core import controllers
from terra_core.errors import InvalidRequest, TerraError
from terra_core.validators import validate_balance_request, validate_poll_request

if TYPE_CHECKING:
    from terra_core.adapter import AdapterManager, TerraAdapter
    from terra_core.config import APIConfig

logger = logging.getLogger("terra_api")


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _error_response(status: int, body: dict) -> web.Response:
    return web.json_response(body, status=status)


def _make_error_middleware():
    """Translate adapter errors into JSON responses."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except TerraError as exc:
            if exc.status_code >= 500:
                logger.error(f"{request.method} {request.path}: {exc.message}")
            return _error_response(exc.status_code, exc.to_dict())

    return error_middleware


def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_ready_middleware(get_adapter):
    """Initialise the adapter before any ``/terra`` handler runs."""

    @web.middleware
    async def ready_middleware(request: web.Request, handler):
        if not request.path.startswith("/terra"):
            return await handler(request)
        adapter: TerraAdapter = get_adapter()
        adapter.request_counter({"action": "request", "path": request.path})
        if not adapter.ready():
            try:
                await adapter.init()
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
                return _error_response(503, {
                    "error": "TokenListUnavailable",
                    "message": f"Token list could not be loaded: {exc}",
                })
        return await handler(request)

    return ready_middleware


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest(["Request body must be valid JSON"]) from None
    if not isinstance(body, dict):
        raise InvalidRequest(["Request body must be a JSON object"])
    return body


class APIServer:
    """Thin aiohttp wrapper around an :class:`AdapterManager`."""

    def __init__(
        self,
        manager: AdapterManager,
        network: str | None = None,
        host: str = "127.0.0.1",
        port: int = 15888,
        *,
        api_config: APIConfig | None = None,
    ):
        self.manager = manager
        self.network = network or manager.config.terra.network
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def adapter(self) -> TerraAdapter:
        return self.manager.get(self.network)

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = [_make_error_middleware()]
        max_body = 1_048_576

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))

        middlewares.append(_make_ready_middleware(lambda: self.adapter))

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/terra/status", self._status)
        app.router.add_post("/terra/balances", self._balances)
        app.router.add_post("/terra/poll", self._poll)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        adapter = self.adapter
        return web.json_response({
            "status": "ok" if adapter.ready() else "starting",
            "network": adapter.chain,
            "state": adapter.state.value,
            "tokens": len(adapter.registry),
        })

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(await controllers.status(self.adapter))

    async def _balances(self, request: web.Request) -> web.Response:
        req = await _read_json(request)
        validate_balance_request(req)
        return web.json_response(await controllers.balances(self.adapter, req))

    async def _poll(self, request: web.Request) -> web.Response:
        req = await _read_json(request)
        validate_poll_request(req)
        return web.json_response(await controllers.poll(self.adapter, req))
