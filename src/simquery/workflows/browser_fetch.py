"""Automation fetch mode: render the enquiry page in Chromium and let its own script load the data."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Type
from urllib.parse import urlparse

from playwright.async_api import async_playwright

from .browser import (
    PlaywrightError,
    PlaywrightTimeoutError,
    launch_browser,
    ms,
    open_context,
    translate_playwright_error,
)
from .errors import DataTimeout, NoData, QueryError, RemoteRejected, SessionInvalid, Timeout
from .extract import RawDocument, find_marker
from .query_config import (
    COOKIE_PATH,
    DATA_READY_SELECTOR,
    INVALID_IDENTIFIER_MARKERS,
    LOAD_TRIGGER_SCRIPT,
    NO_DATA_MARKERS,
    SESSION_INVALID_MARKERS,
    QueryConfig,
)
from .session import Session

logger = logging.getLogger(__name__)


def classify_partial_document(
    html: str,
    *,
    detail: Optional[str] = None,
    fallback: Type[Timeout] = DataTimeout,
    message: str = "Timed out waiting for query data",
) -> QueryError:
    """Name the failure for a page whose data never arrived; a timeout only as a last resort."""

    text = html or ""
    marker = find_marker(text, SESSION_INVALID_MARKERS)
    if marker:
        return SessionInvalid(f"CRM session rejected (page says {marker!r})", detail=detail)
    marker = find_marker(text, INVALID_IDENTIFIER_MARKERS)
    if marker:
        return RemoteRejected(f"The CRM rejected this ICCID (page says {marker!r})", detail=detail)
    marker = find_marker(text, NO_DATA_MARKERS)
    if marker:
        return NoData("No data found for this ICCID", detail=detail)
    return fallback(message, detail=detail)


class BrowserFetcher:
    method = "browser"

    def __init__(self, config: QueryConfig) -> None:
        self.config = config

    def _cookies(self, session: Session) -> List[Dict[str, str]]:
        host = urlparse(self.config.base).hostname or ""
        return [
            {"name": name, "value": value, "domain": host, "path": COOKIE_PATH}
            for name, value in session.cookie_pairs()
        ]

    async def _partial_content(self, page, identifier: str) -> str:
        try:
            partial = await page.content()
        except PlaywrightError as exc:
            logger.debug("could not read partial document for %s: %s", identifier, exc)
            return ""
        logger.debug("partial document for %s: %s", identifier, partial[:1000])
        return partial

    async def fetch(self, identifier: str, session: Session) -> RawDocument:
        cfg = self.config
        url = cfg.query_url(identifier)
        status = 0
        try:
            async with async_playwright() as p:
                browser = await launch_browser(p, cfg)
                try:
                    context = await open_context(browser, cfg)
                    await context.add_cookies(self._cookies(session))
                    page = await context.new_page()
                    logger.info("browser query %s", identifier)
                    try:
                        response = await page.goto(url, wait_until="networkidle", timeout=ms(cfg.browser_timeout))
                    except PlaywrightTimeoutError as exc:
                        partial = await self._partial_content(page, identifier)
                        raise classify_partial_document(
                            partial,
                            detail=str(exc),
                            fallback=Timeout,
                            message="Timed out loading the query page",
                        ) from exc
                    status = response.status if response is not None else 0
                    triggered = await page.evaluate(LOAD_TRIGGER_SCRIPT, identifier)
                    if not triggered:
                        logger.info("page has no loading() hook; waiting on server-rendered data")
                    try:
                        await page.wait_for_selector(
                            DATA_READY_SELECTOR,
                            state="attached",
                            timeout=ms(cfg.data_wait_timeout),
                        )
                    except PlaywrightTimeoutError as exc:
                        partial = await self._partial_content(page, identifier)
                        raise classify_partial_document(partial, detail=str(exc)) from exc
                    await page.wait_for_timeout(ms(cfg.settle_delay))
                    html = await page.content()
                finally:
                    await browser.close()
        except PlaywrightError as exc:
            raise translate_playwright_error(exc, "browser query") from exc
        marker = find_marker(html, SESSION_INVALID_MARKERS)
        if marker:
            raise SessionInvalid(f"CRM session rejected (page says {marker!r})")
        return RawDocument(identifier=identifier, html=html, url=url, method=self.method, status=status or 200)

    async def close(self) -> None:
        return None


__all__ = ["BrowserFetcher", "classify_partial_document"]
