from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)


class HealthServer:
    """Serves ``GET /health``: 200 when Discord is connected and the name store
    answers, 503 otherwise."""

    def __init__(
        self,
        discord_ready: Callable[[], bool],
        store_ping: Callable[[], Awaitable[bool]],
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.discord_ready = discord_ready
        self.store_ping = store_ping
        self.host = host
        self.port = port
        self.started_at = time.monotonic()
        self._runner: Optional[web.AppRunner] = None

    async def check(self) -> dict:
        discord_ok = bool(self.discord_ready())
        try:
            store_ok = bool(await self.store_ping())
        except Exception as exc:
            LOGGER.warning("Name store health check failed: %s", exc)
            store_ok = False
        return {
            "ok": discord_ok and store_ok,
            "discord": discord_ok,
            "name_store": store_ok,
            "uptime_s": round(time.monotonic() - self.started_at),
        }

    async def handle_health(self, _request: web.Request) -> web.Response:
        body = await self.check()
        return web.json_response(body, status=200 if body["ok"] else 503)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        LOGGER.info("Health endpoint listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
