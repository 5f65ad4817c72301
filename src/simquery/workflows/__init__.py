"""High-level exports for the simquery workflows."""

from .admission import AdmissionGuard, FailureCounter
from .errors import (
    AuthFailure,
    Denied,
    InvalidInput,
    NoData,
    QueryError,
    RateLimited,
    RemoteRejected,
    SessionInvalid,
    DataTimeout,
    Timeout,
    Unavailable,
)
from .extract import NO_VALUE, QueryResult, RawDocument, extract
from .orchestrator import QueryOrchestrator, QueryState
from .query_config import QueryConfig, load_config_from_env
from .result_cache import ResultCache
from .runtime import RuntimeContext, build_runtime
from .session import Authenticator, Session, SessionStore

__all__ = [
    "AdmissionGuard",
    "FailureCounter",
    "QueryError",
    "InvalidInput",
    "Denied",
    "AuthFailure",
    "SessionInvalid",
    "RemoteRejected",
    "NoData",
    "Timeout",
    "DataTimeout",
    "Unavailable",
    "RateLimited",
    "NO_VALUE",
    "QueryResult",
    "RawDocument",
    "extract",
    "QueryOrchestrator",
    "QueryState",
    "QueryConfig",
    "load_config_from_env",
    "ResultCache",
    "RuntimeContext",
    "build_runtime",
    "Authenticator",
    "Session",
    "SessionStore",
]
