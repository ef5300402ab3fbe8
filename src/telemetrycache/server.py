"""Polling HTTP endpoint for a running telemetry cache."""

from __future__ import annotations

import json
import logging
from typing import Any

from aiohttp import web

from telemetrycache.cache import LatestTelemetryCache
from telemetrycache.config import TelemetryConfig

_logger = logging.getLogger(__name__)

CACHE_KEY: web.AppKey[LatestTelemetryCache] = web.AppKey("telemetry_cache", LatestTelemetryCache)


async def handle_telemetry(request: web.Request) -> web.Response:
    cache = request.app[CACHE_KEY]
    return web.json_response(cache.get_telemetry(), dumps=_dumps)


async def handle_health(request: web.Request) -> web.Response:
    status = request.app[CACHE_KEY].status()
    body: dict[str, Any] = status.model_dump(mode="json")
    body["receiving"] = status.receiving
    return web.json_response(body, status=200 if status.receiving else 503)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=repr)


def create_app(cache: LatestTelemetryCache, *, manage_lifecycle: bool = False) -> web.Application:
    """Build the web application serving *cache*.

    With ``manage_lifecycle`` the cache is started and stopped together
    with the application.
    """
    app = web.Application()
    app[CACHE_KEY] = cache
    app.router.add_get("/telemetry", handle_telemetry)
    app.router.add_get("/health", handle_health)

    if manage_lifecycle:

        async def cache_ctx(_app: web.Application) -> Any:
            await cache.start()
            yield
            await cache.stop()

        app.cleanup_ctx.append(cache_ctx)
    return app


def run(config: TelemetryConfig) -> None:
    """Serve the cache for *config* until interrupted."""
    cache = LatestTelemetryCache(config)
    app = create_app(cache, manage_lifecycle=True)
    _logger.info("Serving telemetry on http://%s:%s/telemetry", config.server_host, config.server_port)
    web.run_app(app, host=config.server_host, port=config.server_port, print=None)
