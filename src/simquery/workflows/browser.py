"""Playwright plumbing shared by the browser login driver and the automation fetcher."""

from __future__ import annotations

import logging

from playwright.async_api import Browser, BrowserContext, Playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import QueryError, Timeout, Unavailable
from .query_config import BROWSER_LAUNCH_ARGS, QueryConfig

logger = logging.getLogger(__name__)


def ms(seconds: float) -> float:
    return max(0.0, seconds) * 1000.0


async def launch_browser(playwright: Playwright, config: QueryConfig, *, retry: bool = True) -> Browser:
    """Launch Chromium; a stale profile lock gets one retry."""

    logger.info("launching chromium (headless=%s)", config.headless)
    try:
        return await playwright.chromium.launch(
            headless=config.headless,
            args=list(BROWSER_LAUNCH_ARGS),
            timeout=ms(config.browser_timeout),
        )
    except PlaywrightError as exc:
        if retry and "singletonlock" in str(exc).lower():
            logger.warning("browser launch hit SingletonLock; retrying once")
            return await launch_browser(playwright, config, retry=False)
        raise Unavailable(f"Browser launch failed: {exc}") from exc


async def open_context(browser: Browser, config: QueryConfig) -> BrowserContext:
    return await browser.new_context(
        user_agent=config.user_agent,
        viewport={"width": 1280, "height": 720},
        locale="zh-TW",
        java_script_enabled=True,
        extra_http_headers={
            "Accept": config.accept,
            "Accept-Language": config.accept_language,
        },
    )


def translate_playwright_error(exc: PlaywrightError, action: str) -> QueryError:
    if isinstance(exc, PlaywrightTimeoutError):
        return Timeout(f"{action} timed out", detail=str(exc))
    return Unavailable(f"{action} failed: {exc}", detail=str(exc))


__all__ = [
    "PlaywrightError",
    "PlaywrightTimeoutError",
    "launch_browser",
    "open_context",
    "translate_playwright_error",
    "ms",
]
