"""CRM session store and the login flow that fills it."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import aiohttp
from bs4 import BeautifulSoup
from playwright.async_api import async_playwright

from .browser import (
    PlaywrightError,
    PlaywrightTimeoutError,
    launch_browser,
    ms,
    open_context,
    translate_playwright_error,
)
from .doctor import redact_value
from .errors import AuthFailure, QueryError, Timeout, Unavailable
from .extract import decode_document, find_marker
from .query_config import (
    LOGIN_FAILURE_MARKERS,
    LOGIN_PASSWORD_FIELD,
    LOGIN_PASSWORD_SELECTOR,
    LOGIN_SUBMIT_FIELD,
    LOGIN_SUBMIT_SELECTOR,
    LOGIN_SUBMIT_VALUE,
    LOGIN_USER_FIELD,
    LOGIN_USER_SELECTOR,
    SESSION_COOKIE_NAME,
    SESSION_TOKEN_MIN_LENGTH,
    QueryConfig,
)

logger = logging.getLogger(__name__)

TYPING_DELAY_MS = 200
CLICK_DELAY_MS = 100


@dataclass(frozen=True)
class Session:
    tokens: Tuple[str, ...]
    acquired_at: float

    def is_stale(self, ttl: float, now: float) -> bool:
        return not self.tokens or now - self.acquired_at > ttl

    @property
    def cookie_header(self) -> str:
        return "; ".join(self.tokens)

    def cookie_pairs(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for token in self.tokens:
            name, _, value = token.partition("=")
            pairs.append((name, value))
        return pairs


class SessionStore:
    """Holds the one current Session; the Authenticator is its only writer."""

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._current: Optional[Session] = None
        # Set while a login runs; other callers poll instead of starting another.
        self.login_in_progress = False

    @property
    def current(self) -> Optional[Session]:
        return self._current

    def get_valid(self) -> Optional[Session]:
        session = self._current
        if session is None or session.is_stale(self.ttl, self._clock()):
            return None
        return session

    def store(self, tokens: Tuple[str, ...]) -> Session:
        self._current = Session(tokens=tuple(tokens), acquired_at=self._clock())
        return self._current

    def invalidate(self) -> None:
        if self._current is not None:
            logger.info("invalidating CRM session")
        self._current = None


@dataclass(frozen=True)
class LoginOutcome:
    """What a login driver saw after submitting the form."""

    cookies: Tuple[Tuple[str, str], ...]
    body_text: str
    status: int = 200


class LoginDriver(Protocol):
    async def login(self) -> LoginOutcome:
        ...


def _body_text(html: str) -> str:
    soup = BeautifulSoup(html or "", "lxml")
    body = soup.find("body") or soup
    return body.get_text(" ", strip=True)


def build_login_form(login_page_html: str, username: str, password: str) -> Dict[str, str]:
    """Credentials first, then every other pre-filled input echoed back from the login page."""

    form: Dict[str, str] = {
        LOGIN_USER_FIELD: username,
        LOGIN_PASSWORD_FIELD: password,
        LOGIN_SUBMIT_FIELD: LOGIN_SUBMIT_VALUE,
    }
    skip = {LOGIN_USER_FIELD, LOGIN_PASSWORD_FIELD, LOGIN_SUBMIT_FIELD, "button"}
    soup = BeautifulSoup(login_page_html or "", "lxml")
    for node in soup.select("form input"):
        name = node.get("name")
        value = node.get("value")
        if not name or not value or name in skip:
            continue
        form.setdefault(name, value)
    return form


class BrowserLoginDriver:
    """Logs in like an operator would: type into the form and click submit."""

    def __init__(self, config: QueryConfig) -> None:
        self.config = config

    async def login(self) -> LoginOutcome:
        cfg = self.config
        timeout = ms(cfg.login_timeout)
        try:
            async with async_playwright() as p:
                browser = await launch_browser(p, cfg)
                try:
                    context = await open_context(browser, cfg)
                    page = await context.new_page()
                    page.set_default_navigation_timeout(timeout)
                    logger.info("navigating to %s", cfg.login_url)
                    response = await page.goto(cfg.login_url, wait_until="domcontentloaded", timeout=timeout)
                    status = response.status if response is not None else 0
                    if response is not None and not response.ok:
                        raise AuthFailure(f"Login page failed, status: {status}")
                    await page.wait_for_selector(LOGIN_USER_SELECTOR, state="visible", timeout=timeout)
                    await page.wait_for_selector(LOGIN_PASSWORD_SELECTOR, state="visible", timeout=timeout)
                    logger.info("typing credentials")
                    await page.locator(LOGIN_USER_SELECTOR).press_sequentially(cfg.username, delay=TYPING_DELAY_MS)
                    await page.locator(LOGIN_PASSWORD_SELECTOR).press_sequentially(cfg.password, delay=TYPING_DELAY_MS)
                    try:
                        async with page.expect_navigation(wait_until="networkidle", timeout=timeout):
                            await page.click(LOGIN_SUBMIT_SELECTOR, delay=CLICK_DELAY_MS)
                    except PlaywrightTimeoutError:
                        logger.info("no navigation after login submit; checking page content")
                    cookies = await context.cookies()
                    html = await page.content()
                finally:
                    await browser.close()
        except PlaywrightError as exc:
            raise translate_playwright_error(exc, "login") from exc
        pairs = tuple((str(c.get("name", "")), str(c.get("value", ""))) for c in cookies)
        return LoginOutcome(cookies=pairs, body_text=_body_text(html), status=status)


class HttpLoginDriver:
    """Posts the login form directly, echoing the page's hidden fields."""

    def __init__(self, config: QueryConfig) -> None:
        self.config = config

    async def login(self) -> LoginOutcome:
        cfg = self.config
        headers = {
            "User-Agent": cfg.user_agent,
            "Accept": cfg.accept,
            "Accept-Language": cfg.accept_language,
            "Upgrade-Insecure-Requests": "1",
        }
        timeout = aiohttp.ClientTimeout(total=cfg.login_timeout)
        try:
            async with aiohttp.ClientSession(
                headers=headers,
                timeout=timeout,
                cookie_jar=aiohttp.CookieJar(unsafe=True),
            ) as client:
                logger.info("fetching login page %s", cfg.login_url)
                async with client.get(cfg.login_url, allow_redirects=False) as resp:
                    if resp.status >= 400:
                        raise AuthFailure(f"Login page failed, status: {resp.status}")
                    page = decode_document(await resp.read(), encoding=cfg.document_encoding, declared=resp.charset)
                form = build_login_form(page, cfg.username, cfg.password)
                logger.info("submitting login form to %s", cfg.login_action_url)
                async with client.post(
                    cfg.login_action_url,
                    data=form,
                    headers={"Origin": cfg.base, "Referer": cfg.login_url},
                    allow_redirects=True,
                ) as resp:
                    status = resp.status
                    body = decode_document(await resp.read(), encoding=cfg.document_encoding, declared=resp.charset)
                if status >= 400:
                    raise AuthFailure(f"Login form rejected, status: {status}")
                cookies = tuple(
                    (morsel.key, morsel.value)
                    for morsel in client.cookie_jar
                    if morsel.value and "deleted" not in morsel.value
                )
        except asyncio.TimeoutError as exc:
            raise Timeout("login timed out", detail=str(exc)) from exc
        except aiohttp.ClientError as exc:
            raise Unavailable(f"login request failed: {exc}", detail=str(exc)) from exc
        return LoginOutcome(cookies=cookies, body_text=_body_text(body), status=status)


def build_login_driver(config: QueryConfig) -> LoginDriver:
    if config.login_mode == "http":
        return HttpLoginDriver(config)
    return BrowserLoginDriver(config)


class Authenticator:
    """Produces a usable Session, logging in only when the stored one is stale or absent."""

    def __init__(
        self,
        config: QueryConfig,
        store: SessionStore,
        driver: LoginDriver,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.driver = driver
        self._sleep = sleep
        self.login_runs = 0

    async def ensure_session(self, force_refresh: bool = False) -> Session:
        if not force_refresh:
            current = self.store.get_valid()
            if current is not None:
                return current
        if self.store.login_in_progress:
            logger.info("login already in progress; waiting %.1fs", self.config.login_wait)
            await self._sleep(self.config.login_wait)
            current = self.store.get_valid()
            if current is not None:
                return current
            if self.store.login_in_progress:
                raise AuthFailure("Login still in progress after waiting")
        return await self._login()

    async def _login(self) -> Session:
        cfg = self.config
        if not (cfg.username and cfg.password):
            raise AuthFailure(
                "CRM credentials are not configured",
                suggestion="Set SIMQUERY_USERNAME and SIMQUERY_PASSWORD.",
            )
        self.store.login_in_progress = True
        self.login_runs += 1
        last_error: Optional[QueryError] = None
        try:
            for attempt in range(1, cfg.login_attempts + 1):
                try:
                    outcome = await self.driver.login()
                    session = self._accept(outcome)
                except QueryError as exc:
                    self.store.invalidate()
                    last_error = exc
                    logger.warning("login attempt %d/%d failed: %s", attempt, cfg.login_attempts, exc)
                    continue
                logger.info("login successful (%d token(s))", len(session.tokens))
                return session
        finally:
            self.store.login_in_progress = False
        raise AuthFailure(
            f"Login failed after {cfg.login_attempts} attempt(s): {last_error}",
            detail=getattr(last_error, "detail", None),
        )

    def _accept(self, outcome: LoginOutcome) -> Session:
        tokens = tuple(
            f"{name}={value}"
            for name, value in outcome.cookies
            if name == SESSION_COOKIE_NAME and len(value) > SESSION_TOKEN_MIN_LENGTH
        )
        if not tokens:
            raise AuthFailure("No valid session cookies")
        marker = find_marker(outcome.body_text, LOGIN_FAILURE_MARKERS)
        if marker:
            raise AuthFailure(f"Login failed: page contains failure marker {marker!r}")
        logger.debug("session token %s", redact_value(tokens[0]))
        return self.store.store(tokens)


__all__ = [
    "Session",
    "SessionStore",
    "LoginOutcome",
    "LoginDriver",
    "BrowserLoginDriver",
    "HttpLoginDriver",
    "Authenticator",
    "build_login_driver",
    "build_login_form",
]
