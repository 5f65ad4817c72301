"""Turn a fetched CRM enquiry page into a QueryResult (bs4 + lxml)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from bs4 import BeautifulSoup
from charset_normalizer import from_bytes
from soupsieve import SelectorSyntaxError

from ..core.keys import (
    K_ACTIVATION_TIME,
    K_CANCELLATION_TIME,
    K_CARD_TYPE,
    K_ICCID,
    K_LOCATION,
    K_RAW,
    K_STATUS,
    K_USAGE,
)
from .query_config import DEFAULT_FIELD_SELECTORS

logger = logging.getLogger(__name__)

# Marker for a field the page did not resolve; never "" so a blank cell stays distinguishable.
NO_VALUE = "N/A"

PRIMARY_FIELDS = ("card_type", "location", "status")


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RawDocument:
    """Decoded HTML for one identifier plus how it was obtained."""

    identifier: str
    html: str
    url: str
    method: str
    status: int = 200
    fetched_at: str = field(default_factory=_utc_now)


@dataclass(frozen=True)
class QueryResult:
    iccid: str
    card_type: str = NO_VALUE
    location: str = NO_VALUE
    status: str = NO_VALUE
    activation_time: str = NO_VALUE
    cancellation_time: str = NO_VALUE
    usage_mb: str = NO_VALUE
    raw_snippet: str = ""
    method: str = ""

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) == NO_VALUE for name in PRIMARY_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_ICCID: self.iccid,
            K_CARD_TYPE: self.card_type,
            K_LOCATION: self.location,
            K_STATUS: self.status,
            K_ACTIVATION_TIME: self.activation_time,
            K_CANCELLATION_TIME: self.cancellation_time,
            K_USAGE: self.usage_mb,
            K_RAW: self.raw_snippet,
        }


_RESULT_FIELDS = frozenset(
    {"card_type", "location", "status", "activation_time", "cancellation_time", "usage_mb"}
)


def decode_document(raw: bytes, *, encoding: Optional[str] = None, declared: Optional[str] = None) -> str:
    """Decode a body with the site's known encoding, then the declared charset, then charset detection."""

    for candidate in (encoding, declared):
        if not candidate:
            continue
        try:
            return raw.decode(candidate)
        except LookupError:
            logger.debug("unknown encoding %s; trying next", candidate)
        except UnicodeDecodeError as exc:
            logger.debug("body is not %s (%s); trying next", candidate, exc.reason)
    best = from_bytes(raw).best()
    if best is None:
        return raw.decode("utf-8", errors="replace")
    return str(best)


def find_marker(text: str, markers: Iterable[str]) -> Optional[str]:
    for marker in markers:
        if marker and marker in text:
            return marker
    return None


def _select_text(soup: BeautifulSoup, selector: str) -> str:
    try:
        node = soup.select_one(selector)
    except (SelectorSyntaxError, ValueError, NotImplementedError) as exc:
        logger.debug("selector %r failed: %s", selector, exc)
        return NO_VALUE
    if node is None:
        return NO_VALUE
    text = node.get_text(strip=True)
    return text or NO_VALUE


def extract(
    document: RawDocument,
    field_selectors: Sequence[Tuple[str, str]] = DEFAULT_FIELD_SELECTORS,
    *,
    snippet_length: int = 500,
) -> QueryResult:
    soup = BeautifulSoup(document.html or "", "lxml")
    values: Dict[str, str] = {}
    for name, selector in field_selectors:
        if name not in _RESULT_FIELDS:
            continue
        values[name] = _select_text(soup, selector)
        logger.debug("extracted %s=%r for %s", name, values[name], document.identifier)
    result = QueryResult(
        iccid=document.identifier,
        raw_snippet=(document.html or "")[: max(0, snippet_length)],
        method=document.method,
        **values,
    )
    if result.is_empty:
        logger.info("no usable data in %s document for %s", document.method, document.identifier)
    return result


__all__ = [
    "NO_VALUE",
    "PRIMARY_FIELDS",
    "RawDocument",
    "QueryResult",
    "decode_document",
    "find_marker",
    "extract",
]
