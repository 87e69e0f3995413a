"""
holdwatch Core: Cache-Aside Market Data Reader

Read path for every price and sentiment value the core consumes:
1. Check the cache
2. On a miss, fetch from the gateway
3. Write the fresh value back (with the kind's TTL) before returning it

A value is never handed downstream until it has been cached, so a retry
after a crash cannot tell a fresh fetch apart from a cache hit.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from infra.quote_cache import PRICE_TTL_SECONDS, CacheKind, QuoteCache

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_FETCH = "fetch"


@dataclass(frozen=True)
class Reading:
    symbol: str
    kind: CacheKind
    value: float
    source: str  # "cache" or "fetch"

    @property
    def cached(self) -> bool:
        return self.source == SOURCE_CACHE


class MarketDataReader:
    """
    Fronts the price and sentiment gateways with the shared QuoteCache.

    ProviderError and CacheError propagate unchanged; the caller scopes them
    to the affected symbol.
    """

    def __init__(
        self,
        price_gateway,
        sentiment_gateway,
        cache: QuoteCache,
        sentiment_ttl_seconds: float,
        price_ttl_seconds: float = PRICE_TTL_SECONDS,
        metrics=None,
    ):
        self.price_gateway = price_gateway
        self.sentiment_gateway = sentiment_gateway
        self.cache = cache
        self.price_ttl_seconds = float(price_ttl_seconds)
        self.sentiment_ttl_seconds = float(sentiment_ttl_seconds)
        self.metrics = metrics

    def get_price(self, symbol: str) -> Reading:
        return self._read(CacheKind.PRICE, symbol, self.price_gateway.fetch_price, self.price_ttl_seconds)

    def get_sentiment(self, symbol: str) -> Reading:
        return self._read(
            CacheKind.SENTIMENT, symbol, self.sentiment_gateway.fetch_sentiment, self.sentiment_ttl_seconds
        )

    def ttl_remaining(self, kind: CacheKind, symbol: str) -> Optional[float]:
        return self.cache.ttl_remaining(kind, symbol)

    def _read(self, kind: CacheKind, symbol: str, fetch, ttl_seconds: float) -> Reading:
        cached = self.cache.get(kind, symbol)
        if cached is not None:
            logger.debug(f"{symbol}: using cached {kind.value} {cached:.4f}")
            self._record(kind, hit=True)
            return Reading(symbol=symbol, kind=kind, value=cached, source=SOURCE_CACHE)

        self._record(kind, hit=False)
        value = float(fetch(symbol))
        self.cache.set(kind, symbol, value, ttl_seconds)
        logger.debug(f"{symbol}: fetched {kind.value} {value:.4f}")
        return Reading(symbol=symbol, kind=kind, value=value, source=SOURCE_FETCH)

    def _record(self, kind: CacheKind, hit: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_cache_lookup(kind.value, hit)
