"""In-memory identifier -> QueryResult cache with a fixed TTL and a size valve."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from .extract import QueryResult

logger = logging.getLogger(__name__)


class ResultCache:
    """Entries expire lazily on lookup; past the ceiling the whole map is dropped (not LRU)."""

    def __init__(
        self,
        ttl: float,
        max_entries: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[QueryResult, float]] = {}

    def get(self, identifier: str) -> Optional[QueryResult]:
        entry = self._entries.get(identifier)
        if entry is None:
            return None
        result, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(identifier, None)
            return None
        return result

    def put(self, identifier: str, result: QueryResult) -> None:
        if identifier not in self._entries and len(self._entries) >= self.max_entries:
            logger.info("result cache reached %d entries; clearing", len(self._entries))
            self._entries.clear()
        self._entries[identifier] = (result, self._clock() + self.ttl)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.get(identifier) is not None

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["ResultCache"]
