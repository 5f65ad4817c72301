"""The single owned bundle of process-wide query state.

Built once at process start and torn down at shutdown. Everything the
orchestrator mutates (session, cache, failure counts, the work queue) hangs
off one RuntimeContext instead of module globals.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

from .admission import AdmissionGuard, FailureCounter
from .browser_fetch import BrowserFetcher
from .extract import RawDocument
from .http_fetch import HttpFetcher
from .query_config import QueryConfig
from .result_cache import ResultCache
from .session import Authenticator, LoginDriver, Session, SessionStore, build_login_driver

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    method: str

    async def fetch(self, identifier: str, session: Session) -> RawDocument:
        ...

    async def close(self) -> None:
        ...


@dataclass
class RuntimeContext:
    config: QueryConfig
    sessions: SessionStore
    authenticator: Authenticator
    http_fetcher: Fetcher
    browser_fetcher: Fetcher
    cache: ResultCache
    failures: FailureCounter
    guard: AdmissionGuard
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(default_factory=time.monotonic)

    def uptime(self) -> float:
        return max(0.0, self.clock() - self.started_at)

    async def close(self) -> None:
        await self.guard.close()
        await self.http_fetcher.close()
        await self.browser_fetcher.close()
        logger.info("runtime closed")


def build_runtime(
    config: QueryConfig,
    *,
    login_driver: Optional[LoginDriver] = None,
    http_fetcher: Optional[Fetcher] = None,
    browser_fetcher: Optional[Fetcher] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RuntimeContext:
    """Wire the default collaborators; tests pass fakes for the network-facing ones."""

    sessions = SessionStore(config.session_ttl, clock=clock)
    authenticator = Authenticator(
        config,
        sessions,
        login_driver or build_login_driver(config),
        sleep=sleep,
    )
    return RuntimeContext(
        config=config,
        sessions=sessions,
        authenticator=authenticator,
        http_fetcher=http_fetcher or HttpFetcher(config, sleep=sleep),
        browser_fetcher=browser_fetcher or BrowserFetcher(config),
        cache=ResultCache(config.cache_ttl, config.cache_max_entries, clock=clock),
        failures=FailureCounter(config.failure_threshold),
        guard=AdmissionGuard(),
        clock=clock,
        started_at=clock(),
    )


__all__ = ["Fetcher", "RuntimeContext", "build_runtime"]
