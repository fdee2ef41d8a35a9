"""Live eBay market statistics with a short in-process cache.

Fetches active listings with the app-level eBay token and runs them through
the statistics engine. Results are cached per item name for an hour since
listings move slowly and every fetch spends API quota.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx

from .core import market_stats
from .core.clients import ebay
from .core.clients.http import DEFAULT_TIMEOUT_SECONDS
from .core.credentials import AppCredentialCache
from .core.errors import RemoteError
from .core.models import MarketStatistics

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600


class MarketPriceService:
    """eBay listing fetch plus ``market_stats.analyze``, cached by item name."""

    def __init__(
        self,
        credentials: AppCredentialCache,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        half_open_buckets: bool = False,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credentials = credentials
        self.cache_ttl_seconds = cache_ttl_seconds
        self.half_open_buckets = half_open_buckets
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._cache: dict[str, tuple[float, MarketStatistics]] = {}

    async def market_statistics(self, item_name: str) -> MarketStatistics:
        key = item_name.strip().lower()
        cached = self._cache.get(key)
        if cached is not None and self._clock() - cached[0] < self.cache_ttl_seconds:
            logger.debug("Market statistics cache hit for %r", key)
            return cached[1]

        token = await self.credentials.get_valid_token()
        try:
            listings = await ebay.fetch_listings(
                item_name,
                token,
                environment=self.credentials.environment,
                timeout=self.timeout,
                transport=self._transport,
            )
        except RemoteError as exc:
            if exc.code == 401:
                # Token revoked server-side; the next call starts a fresh exchange.
                await self.credentials.invalidate()
            raise

        stats = market_stats.analyze(listings, half_open_buckets=self.half_open_buckets)
        self._cache[key] = (self._clock(), stats)
        return stats

    def clear_cache(self) -> None:
        self._cache.clear()
