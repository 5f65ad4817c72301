"""Per-request query state machine.

IDLE -> CACHE_CHECK -> SESSION_CHECK -> HTTP_FETCH -> CLASSIFY
     -> [AUTOMATION_FETCH -> CLASSIFY] -> CACHE_WRITE -> DONE

DENIED is terminal and reachable only from IDLE. Each fetch mode gets one
forced re-login when it reports SessionInvalid; the automation mode's second
SessionInvalid becomes AuthFailure. Every state is its own method returning
the next state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import AuthFailure, Denied, NoData, QueryError, SessionInvalid, mentions_closed_connection
from .extract import QueryResult, RawDocument, extract
from .runtime import RuntimeContext
from .session import Session

logger = logging.getLogger(__name__)


class QueryState(str, Enum):
    IDLE = "idle"
    DENIED = "denied"
    CACHE_CHECK = "cache_check"
    SESSION_CHECK = "session_check"
    HTTP_FETCH = "http_fetch"
    AUTOMATION_FETCH = "automation_fetch"
    CLASSIFY = "classify"
    CACHE_WRITE = "cache_write"
    DONE = "done"


MODE_HTTP = "http"
MODE_AUTOMATION = "automation"


@dataclass
class QueryRun:
    """Mutable scratch state for one identifier's trip through the machine."""

    identifier: str
    mode: str = MODE_HTTP
    session: Optional[Session] = None
    force_refresh: bool = False
    http_reauth_used: bool = False
    automation_reauth_used: bool = False
    document: Optional[RawDocument] = None
    result: Optional[QueryResult] = None
    from_cache: bool = False
    trace: List[QueryState] = field(default_factory=list)


class QueryOrchestrator:
    def __init__(self, runtime: RuntimeContext) -> None:
        self.runtime = runtime
        self._handlers: Dict[QueryState, Callable[[QueryRun], Awaitable[QueryState]]] = {
            QueryState.IDLE: self._idle,
            QueryState.DENIED: self._denied,
            QueryState.CACHE_CHECK: self._cache_check,
            QueryState.SESSION_CHECK: self._session_check,
            QueryState.HTTP_FETCH: self._http_fetch,
            QueryState.AUTOMATION_FETCH: self._automation_fetch,
            QueryState.CLASSIFY: self._classify,
            QueryState.CACHE_WRITE: self._cache_write,
        }

    async def run(self, identifier: str) -> QueryResult:
        """Drive one query to DONE; classified failures update the counters before propagating."""

        run = QueryRun(identifier=identifier)
        try:
            await self.drive(run)
        except QueryError as exc:
            self._record_failure(run, exc)
            raise
        assert run.result is not None
        return run.result

    async def drive(self, run: QueryRun) -> QueryRun:
        state = QueryState.IDLE
        while state is not QueryState.DONE:
            run.trace.append(state)
            logger.debug("query %s: %s", run.identifier, state.value)
            state = await self._handlers[state](run)
        run.trace.append(state)
        return run

    def _record_failure(self, run: QueryRun, exc: QueryError) -> None:
        rt = self.runtime
        if exc.counts_against_identifier:
            count = rt.failures.increment(run.identifier)
            logger.info("query %s failed (%s); failure count now %d", run.identifier, exc.code, count)
        else:
            logger.info("query %s failed (%s)", run.identifier, exc.code)
        if mentions_closed_connection(exc):
            rt.sessions.invalidate()

    async def _idle(self, run: QueryRun) -> QueryState:
        if self.runtime.failures.is_denied(run.identifier):
            return QueryState.DENIED
        return QueryState.CACHE_CHECK

    async def _denied(self, run: QueryRun) -> QueryState:
        raise Denied(f"Too many failed attempts for ICCID {run.identifier}")

    async def _cache_check(self, run: QueryRun) -> QueryState:
        cached = self.runtime.cache.get(run.identifier)
        if cached is None:
            return QueryState.SESSION_CHECK
        logger.info("returning cached result for %s", run.identifier)
        run.result = cached
        run.from_cache = True
        return QueryState.DONE

    async def _session_check(self, run: QueryRun) -> QueryState:
        run.session = await self.runtime.authenticator.ensure_session(force_refresh=run.force_refresh)
        run.force_refresh = False
        return QueryState.HTTP_FETCH if run.mode == MODE_HTTP else QueryState.AUTOMATION_FETCH

    async def _http_fetch(self, run: QueryRun) -> QueryState:
        assert run.session is not None
        try:
            run.document = await self.runtime.http_fetcher.fetch(run.identifier, run.session)
        except SessionInvalid:
            if not run.http_reauth_used:
                logger.info("session invalid during HTTP query %s; re-logging in", run.identifier)
                run.http_reauth_used = True
                run.force_refresh = True
                return QueryState.SESSION_CHECK
            logger.info("HTTP still reports an invalid session for %s; switching to browser", run.identifier)
            run.mode = MODE_AUTOMATION
            return QueryState.AUTOMATION_FETCH
        return QueryState.CLASSIFY

    async def _automation_fetch(self, run: QueryRun) -> QueryState:
        assert run.session is not None
        try:
            run.document = await self.runtime.browser_fetcher.fetch(run.identifier, run.session)
        except SessionInvalid as exc:
            if run.automation_reauth_used:
                raise AuthFailure("CRM session still invalid after re-login", detail=str(exc)) from exc
            logger.info("session invalid during browser query %s; re-logging in", run.identifier)
            run.automation_reauth_used = True
            run.force_refresh = True
            return QueryState.SESSION_CHECK
        return QueryState.CLASSIFY

    async def _classify(self, run: QueryRun) -> QueryState:
        assert run.document is not None
        cfg = self.runtime.config
        result = extract(run.document, cfg.field_selectors, snippet_length=cfg.snippet_length)
        if not result.is_empty:
            run.result = result
            return QueryState.CACHE_WRITE
        if run.mode == MODE_HTTP:
            logger.info("no data in HTTP response for %s; falling back to browser", run.identifier)
            run.mode = MODE_AUTOMATION
            return QueryState.AUTOMATION_FETCH
        raise NoData("No usable data for this ICCID; it may be invalid")

    async def _cache_write(self, run: QueryRun) -> QueryState:
        assert run.result is not None
        rt = self.runtime
        rt.failures.clear(run.identifier)
        rt.cache.put(run.identifier, run.result)
        return QueryState.DONE


__all__ = ["QueryOrchestrator", "QueryRun", "QueryState"]
