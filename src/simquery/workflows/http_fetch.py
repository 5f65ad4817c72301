"""Lightweight fetch mode: one credentialed GET against the enquiry endpoint (aiohttp)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from .errors import QueryError, RateLimited, RemoteRejected, SessionInvalid, Timeout, Unavailable
from .extract import RawDocument, decode_document, find_marker
from .query_config import SESSION_INVALID_MARKERS, QueryConfig
from .session import Session

logger = logging.getLogger(__name__)

LOG_BODY_CHARS = 1000


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes
    charset: Optional[str] = None
    retry_after: Optional[str] = None


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class HttpFetcher:
    method = "http"

    def __init__(
        self,
        config: QueryConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self._client: Optional[aiohttp.ClientSession] = None

    def _headers(self, session: Session) -> Dict[str, str]:
        return {
            "Cookie": session.cookie_header,
            "Accept": self.config.accept,
            "Accept-Language": self.config.accept_language,
            "User-Agent": self.config.user_agent,
        }

    async def _session(self) -> aiohttp.ClientSession:
        if self._client is None or self._client.closed:
            self._client = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.http_timeout),
            )
        return self._client

    async def _request_once(self, url: str, headers: Dict[str, str]) -> HttpResponse:
        client = await self._session()
        async with client.get(url, headers=headers) as resp:
            body = await resp.read()
            return HttpResponse(
                status=resp.status,
                body=body,
                charset=resp.charset,
                retry_after=resp.headers.get("Retry-After"),
            )

    async def fetch(self, identifier: str, session: Session) -> RawDocument:
        cfg = self.config
        url = cfg.query_url(identifier)
        headers = self._headers(session)
        delay = cfg.backoff_initial
        last_error: QueryError = Unavailable("HTTP query was not attempted")
        for attempt in range(1, cfg.http_attempts + 1):
            logger.info("HTTP query %s (attempt %d/%d)", identifier, attempt, cfg.http_attempts)
            try:
                response = await self._request_once(url, headers)
            except asyncio.TimeoutError as exc:
                last_error = Timeout("HTTP query timed out", detail=f"{url}: no response in {cfg.http_timeout}s")
                logger.warning("HTTP query %s timed out: %s", identifier, exc)
            except aiohttp.ClientError as exc:
                last_error = Unavailable(f"HTTP query failed: {exc}", detail=str(exc))
                logger.warning("HTTP query %s failed: %s", identifier, exc)
            else:
                if response.status == 429:
                    wait = _retry_after_seconds(response.retry_after)
                    if wait is None:
                        wait = (2 ** (attempt - 1)) * cfg.rate_limit_base_delay
                    wait = min(wait, cfg.retry_after_max)
                    last_error = RateLimited("The CRM is rate limiting queries", detail=f"HTTP 429 from {url}")
                    if attempt < cfg.http_attempts:
                        logger.info("rate limit hit, waiting %.1fs", wait)
                        await self._sleep(wait)
                    continue
                return self._accept(identifier, url, response)
            if attempt < cfg.http_attempts:
                await self._sleep(delay)
                delay = min(delay * 2, cfg.backoff_max)
        raise last_error

    def _accept(self, identifier: str, url: str, response: HttpResponse) -> RawDocument:
        cfg = self.config
        text = decode_document(response.body, encoding=cfg.document_encoding, declared=response.charset)
        logger.debug("HTTP response for %s: %s", identifier, text[:LOG_BODY_CHARS])
        if response.status != 200:
            raise RemoteRejected(
                f"Query failed, status: {response.status}",
                detail=text[:200] or None,
            )
        marker = find_marker(text, SESSION_INVALID_MARKERS)
        if marker:
            raise SessionInvalid(f"CRM session rejected (page says {marker!r})")
        return RawDocument(identifier=identifier, html=text, url=url, method=self.method, status=response.status)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None and not client.closed:
            await client.close()


__all__ = ["HttpFetcher", "HttpResponse"]
