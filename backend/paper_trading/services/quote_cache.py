from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, TypeVar

from .errors import QuoteUnavailableError

logger = logging.getLogger("paper_trading.quote_cache")

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class QuoteCache:
    """Short-TTL cache over an upstream quote source with stale-on-error reads.

    Entries are immutable and replaced wholesale, so readers never lock. When
    two refreshes race, the entry with the newest fetch timestamp is kept.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, default_timeout: float | None = None):
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._clock = clock
        self._default_timeout = default_timeout

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def peek(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def put(self, key: str, value: Any, ttl: float, fetched_at: float | None = None) -> None:
        stamp = self._clock() if fetched_at is None else fetched_at
        current = self._entries.get(key)
        if current is not None and current.fetched_at > stamp:
            return
        self._entries[key] = CacheEntry(value=value, fetched_at=stamp, ttl=ttl)

    def clear(self) -> None:
        evicted = len(self._entries)
        self._entries.clear()
        logger.info("Quote cache cleared", extra={"event": "quote_cache_cleared", "evicted": evicted})

    async def get(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: float,
        *,
        timeout: float | None = None,
    ) -> T:
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.value

        effective_timeout = timeout if timeout is not None else self._default_timeout
        try:
            if effective_timeout is not None:
                value = await asyncio.wait_for(fetch(), timeout=effective_timeout)
            else:
                value = await fetch()
        except Exception as exc:  # noqa: BLE001
            stale = self._entries.get(key)
            if stale is None:
                logger.error(
                    "Quote fetch failed with nothing cached",
                    extra={"event": "quote_fetch_failed", "cache_key": key, "error": repr(exc)},
                )
                raise QuoteUnavailableError(key, str(exc) or exc.__class__.__name__) from exc
            logger.warning(
                "Serving stale quote after fetch failure",
                extra={
                    "event": "quote_cache_stale_hit",
                    "cache_key": key,
                    "age_seconds": round(self._clock() - stale.fetched_at, 3),
                    "error": repr(exc),
                },
            )
            return stale.value

        self.put(key, value, ttl)
        return value
