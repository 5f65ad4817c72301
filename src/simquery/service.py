"""Inbound boundary: validate, queue, run, and classify one SIM query."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .workflows.errors import InvalidInput, QueryError, Unavailable
from .workflows.extract import QueryResult
from .workflows.orchestrator import QueryOrchestrator
from .workflows.query_config import QueryConfig, load_config_from_env
from .workflows.runtime import RuntimeContext, build_runtime

logger = logging.getLogger(__name__)

_ICCID_RE = re.compile(r"[0-9]{19,20}")


def validate_identifier(raw: Any) -> str:
    """Return the ICCID unchanged or raise InvalidInput; never touches shared state."""

    if raw is None or raw == "":
        raise InvalidInput("ICCID cannot be empty", suggestion="Please enter a valid ICCID number.")
    identifier = raw if isinstance(raw, str) else str(raw)
    if not _ICCID_RE.fullmatch(identifier):
        raise InvalidInput("Invalid ICCID format")
    return identifier


@dataclass(frozen=True)
class QueryOutcome:
    http_status: int
    body: Dict[str, Any]
    result: Optional[QueryResult] = None
    error: Optional[QueryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def outcome(self) -> str:
        return "ok" if self.error is None else self.error.outcome

    @classmethod
    def success(cls, result: QueryResult) -> "QueryOutcome":
        return cls(http_status=200, body=result.to_dict(), result=result)

    @classmethod
    def failure(cls, error: QueryError) -> "QueryOutcome":
        return cls(http_status=error.http_status, body=error.to_dict(), error=error)


class QueryService:
    def __init__(self, runtime: RuntimeContext) -> None:
        self.runtime = runtime
        self.orchestrator = QueryOrchestrator(runtime)

    @classmethod
    def from_config(cls, config: Optional[QueryConfig] = None) -> "QueryService":
        return cls(build_runtime(config or load_config_from_env()))

    async def query_sim(self, identifier: Any) -> QueryOutcome:
        try:
            iccid = validate_identifier(identifier)
            logger.info("received query for ICCID %s", iccid)
            result = await self.runtime.guard.submit(lambda: self.orchestrator.run(iccid))
        except QueryError as exc:
            logger.info("query %r -> %s: %s", identifier, exc.outcome, exc)
            return QueryOutcome.failure(exc)
        except Exception as exc:
            logger.exception("unexpected failure querying %r", identifier)
            return QueryOutcome.failure(Unavailable("Server unavailable", detail=f"{type(exc).__name__}: {exc}"))
        return QueryOutcome.success(result)

    def health(self) -> Dict[str, Any]:
        rt = self.runtime
        return {
            "status": "ok",
            "uptime": round(rt.uptime(), 3),
            "cache_entries": len(rt.cache),
            "session_valid": rt.sessions.get_valid() is not None,
            "queue_depth": rt.guard.depth,
            "busy": rt.guard.busy,
        }

    def reset_failures(self, identifier: Optional[str] = None) -> int:
        dropped = self.runtime.failures.reset(identifier)
        logger.info("reset failure counts for %s (%d cleared)", identifier or "all ICCIDs", dropped)
        return dropped

    async def start(self, *, preload: bool = True) -> None:
        if not preload:
            return
        logger.info("preloading CRM login")
        try:
            await self.runtime.guard.submit(self.runtime.authenticator.ensure_session)
        except QueryError as exc:
            logger.warning("preload login failed: %s", exc)

    async def close(self) -> None:
        await self.runtime.close()


__all__ = ["QueryOutcome", "QueryService", "validate_identifier"]
