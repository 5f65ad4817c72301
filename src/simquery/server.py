"""aiohttp.web front end: the query route, health, and failure-counter resets."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from aiohttp import web

from .service import QueryOutcome, QueryService
from .workflows.errors import InvalidInput, RateLimited

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 15
DEFAULT_RATE_WINDOW = 60.0


class RateLimiter:
    """Sliding-window request limit per client key."""

    def __init__(
        self,
        limit: int = DEFAULT_RATE_LIMIT,
        window: float = DEFAULT_RATE_WINDOW,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_prune = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def _trim(self, hits: Deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window:
            hits.popleft()

    def _prune(self, now: float) -> None:
        # Clients idle for a whole window are forgotten.
        for key in list(self._hits):
            hits = self._hits[key]
            self._trim(hits, now)
            if not hits:
                del self._hits[key]
        self._last_prune = now

    def allow(self, key: str) -> bool:
        now = self._clock()
        if now - self._last_prune >= self.window:
            self._prune(now)
        hits = self._hits.setdefault(key, deque())
        self._trim(hits, now)
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True


SERVICE_KEY = web.AppKey("simquery_service", QueryService)
LIMITER_KEY = web.AppKey("simquery_limiter", RateLimiter)

routes = web.RouteTableDef()


def _client_key(request: web.Request) -> str:
    return request.remote or "unknown"


def _respond(outcome: QueryOutcome) -> web.Response:
    return web.json_response(outcome.body, status=outcome.http_status)


@routes.post("/api/query-sim")
async def query_sim_handler(request: web.Request) -> web.Response:
    if not request.app[LIMITER_KEY].allow(_client_key(request)):
        logger.info("rate limit exceeded for %s", _client_key(request))
        return _respond(QueryOutcome.failure(RateLimited("Too many requests")))
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _respond(QueryOutcome.failure(InvalidInput("Invalid JSON payload")))
    iccid = payload.get("iccid") if isinstance(payload, dict) else None
    outcome = await request.app[SERVICE_KEY].query_sim(iccid)
    return _respond(outcome)


@routes.get("/health")
async def health_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[SERVICE_KEY].health())


@routes.delete("/api/failures")
async def reset_all_failures_handler(request: web.Request) -> web.Response:
    cleared = request.app[SERVICE_KEY].reset_failures()
    return web.json_response({"cleared": cleared})


@routes.delete("/api/failures/{iccid}")
async def reset_failures_handler(request: web.Request) -> web.Response:
    iccid = request.match_info["iccid"]
    cleared = request.app[SERVICE_KEY].reset_failures(iccid)
    return web.json_response({"iccid": iccid, "cleared": cleared})


def create_app(
    service: Optional[QueryService] = None,
    *,
    preload: bool = True,
    rate_limit: int = DEFAULT_RATE_LIMIT,
    rate_window: float = DEFAULT_RATE_WINDOW,
) -> web.Application:
    service = service or QueryService.from_config()
    app = web.Application()
    app[SERVICE_KEY] = service
    app[LIMITER_KEY] = RateLimiter(rate_limit, rate_window)
    app.add_routes(routes)

    async def on_startup(_: web.Application) -> None:
        await service.start(preload=preload)

    async def on_cleanup(_: web.Application) -> None:
        await service.close()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def run_server(app: web.Application, host: str, port: int) -> None:
    logger.info("serving on http://%s:%d", host, port)
    web.run_app(app, host=host, port=port, print=None)


__all__ = ["RateLimiter", "create_app", "run_server", "SERVICE_KEY"]
