import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


class FeedError(Exception):
    """The feed answered with something we cannot read a number from."""


@dataclass
class NumberCache:
    value: Optional[int] = None
    fetched_at: float = 0.0


def parse_current_number(records: Any, key: str) -> int:
    if not isinstance(records, list) or not records:
        raise FeedError("empty result from number feed")
    try:
        latest = sorted(records, key=lambda r: r.get("UpdDate") or 0, reverse=True)[0]
    except (AttributeError, TypeError) as e:
        raise FeedError(f"unsortable records: {e}") from e
    try:
        detail = json.loads(latest["detail_json"])
        raw = detail["selections"][key]
    except (KeyError, TypeError, ValueError) as e:
        raise FeedError(f"malformed record: {e}") from e
    if isinstance(raw, bool):
        raise FeedError(f"not a number: {raw!r}")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise FeedError(f"not a whole number: {raw!r}")
        return int(raw)
    try:
        number = int(str(raw).strip())
    except ValueError as e:
        raise FeedError(f"not a number: {raw!r}") from e
    return number


class CurrentNumberSource:
    """
    Latest announced queue number, cached for `ttl` seconds.

    `get_current_number` returns None when the feed is unavailable; errors are
    logged, never raised. A failed fetch leaves the cache as it was and never
    serves the stale value.
    """

    def __init__(
        self,
        url: str,
        key: str,
        ttl: float = 60.0,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        fetch: Optional[FetchFn] = None,
    ) -> None:
        self.url = url
        self.key = key
        self.ttl = ttl
        self.timeout = timeout
        self.clock = clock
        self.cache = NumberCache()
        self._fetch = fetch or self._fetch_records
        self._lock = asyncio.Lock()

    def _cached(self) -> Optional[int]:
        if self.cache.value is not None and self.clock() - self.cache.fetched_at < self.ttl:
            return self.cache.value
        return None

    async def _fetch_records(self) -> List[Any]:
        timeout_obj = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout_obj) as session:
            async with session.get(self.url) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

    async def get_current_number(self) -> Optional[int]:
        hit = self._cached()
        if hit is not None:
            return hit
        async with self._lock:
            # another caller may have filled the cache while we waited
            hit = self._cached()
            if hit is not None:
                return hit
            try:
                records = await self._fetch()
                number = parse_current_number(records, self.key)
            except (aiohttp.ClientError, asyncio.TimeoutError, FeedError, ValueError) as e:
                logger.error("[number] Failed to get current number: %s", e)
                return None
            self.cache = NumberCache(value=number, fetched_at=self.clock())
            return number
