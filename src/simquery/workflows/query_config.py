"""Query defaults (endpoints, markers, selectors, timeouts) and env loading.

Centralizes the target site's legacy contract so the fetchers and extractor
carry no embedded magic strings. Callers can build their own QueryConfig to
override any of them; ``load_config_from_env`` is the usual entry point.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Endpoints (relative to the base URL)
DEFAULT_BASE_URL = "http://api2021.multibyte.com:57842"
LOGIN_PATH = "/crm/index.html"
LOGIN_ACTION_PATH = "/crm/logon.jsp"
QUERY_PATH = "/crm/prepaid_enquiry_action_load.jsp"
DETAILS_PAGE = "prepaid_enquiry_details.jsp"
QUERY_PARAM = "dat"
COOKIE_PATH = "/crm"

# Login form
SESSION_COOKIE_NAME = "JSESSIONID"
SESSION_TOKEN_MIN_LENGTH = 10
LOGIN_USER_FIELD = "user_id"
LOGIN_PASSWORD_FIELD = "password"
LOGIN_SUBMIT_FIELD = "Submit"
LOGIN_SUBMIT_VALUE = "登入"
LOGIN_USER_SELECTOR = 'input[name="user_id"]'
LOGIN_PASSWORD_SELECTOR = 'input[name="password"]'
LOGIN_SUBMIT_SELECTOR = 'input[type="submit"]'

# Body markers in the target site's language
LOGIN_FAILURE_MARKERS: Tuple[str, ...] = ("無效", "錯誤", "失敗")
SESSION_INVALID_MARKERS: Tuple[str, ...] = ("請登錄", "未授權")
INVALID_IDENTIFIER_MARKERS: Tuple[str, ...] = ("ICCID輸入錯誤", "String index out of range", "無效", "錯誤")
NO_DATA_MARKERS: Tuple[str, ...] = ("無此資料",)
CONNECTION_CLOSED_HINTS: Tuple[str, ...] = (
    "target closed",
    "connection closed",
    "has been closed",
    "server disconnected",
    "singletonlock",
)

# Browser automation
DATA_READY_SELECTOR = "#displayBill div div table:nth-of-type(3) tbody tr:nth-child(3) td:nth-child(1)"
LOAD_TRIGGER_SCRIPT = (
    "(iccid) => {"
    "window.scrollTo(0, document.body.scrollHeight);"
    "if (typeof loading === 'function') {"
    "loading('" + DETAILS_PAGE + "', 'displayBill', '" + QUERY_PARAM + "', iccid, 'loader');"
    "return true;"
    "}"
    "return false;"
    "}"
)
BROWSER_LAUNCH_ARGS: Tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
)

# Ordered field -> selector map. Primary identity fields come first.
_ROW = "#displayBill div div table:nth-of-type(3) > tbody > tr:nth-child(3)"
DEFAULT_FIELD_SELECTORS: Tuple[Tuple[str, str], ...] = (
    ("card_type", "#displayBill div div table:nth-of-type(1) > tbody > tr:nth-child(2) > td:nth-child(1) > div"),
    ("location", f"{_ROW} > td:nth-child(1) > div"),
    ("status", f"{_ROW} > td:nth-child(3) > div"),
    ("activation_time", f"{_ROW} > td:nth-child(4) > div"),
    ("cancellation_time", f"{_ROW} > td:nth-child(5) > div"),
    ("usage_mb", f"{_ROW} > td:nth-child(12) > div"),
)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
DEFAULT_ACCEPT_LANGUAGE = "zh-TW,zh-CN;q=0.9,zh;q=0.8"

LOGIN_MODES = ("browser", "http")


@dataclass
class QueryConfig:
    """Tunables for one runtime; every field has an env override."""

    base_url: str = DEFAULT_BASE_URL
    username: str = ""
    password: str = ""
    login_mode: str = "browser"
    # Session
    session_ttl: float = 25 * 60
    login_attempts: int = 3
    login_wait: float = 10.0
    login_timeout: float = 10.0
    # HTTP-mode
    http_timeout: float = 3.0
    http_attempts: int = 3
    backoff_initial: float = 0.8
    backoff_max: float = 6.0
    rate_limit_base_delay: float = 2.0
    retry_after_max: float = 30.0
    # Automation-mode
    browser_timeout: float = 10.0
    data_wait_timeout: float = 30.0
    settle_delay: float = 1.0
    headless: bool = True
    # Cache / admission
    cache_ttl: float = 4 * 60 * 60
    cache_max_entries: int = 2000
    failure_threshold: int = 3
    # Documents
    document_encoding: Optional[str] = "big5"
    snippet_length: int = 500
    user_agent: str = DEFAULT_USER_AGENT
    accept: str = DEFAULT_ACCEPT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    field_selectors: Tuple[Tuple[str, str], ...] = field(default_factory=lambda: DEFAULT_FIELD_SELECTORS)

    @property
    def base(self) -> str:
        return self.base_url.rstrip("/")

    @property
    def login_url(self) -> str:
        return f"{self.base}{LOGIN_PATH}"

    @property
    def login_action_url(self) -> str:
        return f"{self.base}{LOGIN_ACTION_PATH}"

    def query_url(self, identifier: str) -> str:
        return f"{self.base}{QUERY_PATH}?{QUERY_PARAM}={identifier}"


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _load_field_selectors() -> Tuple[Tuple[str, str], ...]:
    """
    Merge per-field selector overrides onto the defaults, keeping order.
    Env: SIMQUERY_FIELD_SELECTORS='{"status": "#displayBill td.status"}'
    Unknown field names are ignored.
    """
    raw = os.getenv("SIMQUERY_FIELD_SELECTORS", "").strip()
    if not raw:
        return DEFAULT_FIELD_SELECTORS
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("SIMQUERY_FIELD_SELECTORS is not valid JSON; using defaults")
        return DEFAULT_FIELD_SELECTORS
    if not isinstance(data, dict):
        return DEFAULT_FIELD_SELECTORS
    overrides: Dict[str, str] = {
        str(k): str(v) for k, v in data.items() if isinstance(v, str) and v.strip()
    }
    merged = tuple((name, overrides.pop(name, selector)) for name, selector in DEFAULT_FIELD_SELECTORS)
    if overrides:
        logger.warning("Ignoring unknown fields in SIMQUERY_FIELD_SELECTORS: %s", ", ".join(sorted(overrides)))
    return merged


def load_config_from_env() -> QueryConfig:
    defaults = QueryConfig()
    login_mode = os.getenv("SIMQUERY_LOGIN_MODE", defaults.login_mode).strip().lower()
    if login_mode not in LOGIN_MODES:
        logger.warning("Unknown SIMQUERY_LOGIN_MODE=%s; falling back to %s", login_mode, defaults.login_mode)
        login_mode = defaults.login_mode
    encoding = os.getenv("SIMQUERY_DOCUMENT_ENCODING", defaults.document_encoding or "").strip()
    return QueryConfig(
        base_url=os.getenv("SIMQUERY_BASE_URL", defaults.base_url).strip() or defaults.base_url,
        username=os.getenv("SIMQUERY_USERNAME", ""),
        password=os.getenv("SIMQUERY_PASSWORD", ""),
        login_mode=login_mode,
        session_ttl=_env_float("SIMQUERY_SESSION_TTL", defaults.session_ttl),
        login_attempts=max(1, _env_int("SIMQUERY_LOGIN_ATTEMPTS", defaults.login_attempts)),
        login_wait=_env_float("SIMQUERY_LOGIN_WAIT", defaults.login_wait),
        login_timeout=_env_float("SIMQUERY_LOGIN_TIMEOUT", defaults.login_timeout),
        http_timeout=_env_float("SIMQUERY_HTTP_TIMEOUT", defaults.http_timeout),
        http_attempts=max(1, _env_int("SIMQUERY_HTTP_ATTEMPTS", defaults.http_attempts)),
        retry_after_max=_env_float("SIMQUERY_RETRY_AFTER_MAX", defaults.retry_after_max),
        browser_timeout=_env_float("SIMQUERY_BROWSER_TIMEOUT", defaults.browser_timeout),
        data_wait_timeout=_env_float("SIMQUERY_DATA_WAIT_TIMEOUT", defaults.data_wait_timeout),
        settle_delay=_env_float("SIMQUERY_SETTLE_DELAY", defaults.settle_delay),
        headless=_env_bool("SIMQUERY_HEADLESS", defaults.headless),
        cache_ttl=_env_float("SIMQUERY_CACHE_TTL", defaults.cache_ttl),
        cache_max_entries=max(1, _env_int("SIMQUERY_CACHE_MAX_ENTRIES", defaults.cache_max_entries)),
        failure_threshold=max(1, _env_int("SIMQUERY_FAILURE_THRESHOLD", defaults.failure_threshold)),
        document_encoding=encoding or None,
        user_agent=os.getenv("SIMQUERY_USER_AGENT", defaults.user_agent),
        field_selectors=_load_field_selectors(),
    )


__all__ = [
    "QueryConfig",
    "load_config_from_env",
    "DEFAULT_FIELD_SELECTORS",
]
