"""
holdwatch Runner: Sentiment and Market Screens

Read-only views that run as their own processes next to the portfolio loop.
They share the quote cache with it but never touch holdings, cash or the
ledger.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
import logging

from core.exceptions import CacheError, CycleCancelled, ProviderError
from core.exchange import MarketRow
from core.market_data import MarketDataReader
from core.monitor_cycle import DataFailure
from core.sentiment import classify_sentiment
from infra.quote_cache import CacheKind

logger = logging.getLogger(__name__)

SORT_KEYS = ("market_cap", "price_change_24h")


@dataclass
class SentimentRow:
    symbol: str
    score: float
    source: str  # "cache" or "fetch"
    ttl_remaining: Optional[float]
    recommendation: str


class SentimentScreen:
    """Sentiment for each symbol, served through the shared cache."""

    def __init__(
        self,
        reader: MarketDataReader,
        symbols: List[str],
        positive_threshold: float,
        negative_threshold: float,
    ):
        self.reader = reader
        self.symbols = list(symbols)
        self.positive_threshold = positive_threshold
        self.negative_threshold = negative_threshold

    def refresh(
        self, should_continue: Optional[Callable[[], bool]] = None
    ) -> Tuple[List[SentimentRow], List[DataFailure]]:
        rows: List[SentimentRow] = []
        failures: List[DataFailure] = []

        for symbol in self.symbols:
            if should_continue is not None and not should_continue():
                raise CycleCancelled(f"shutdown requested before fetching {symbol}")
            try:
                reading = self.reader.get_sentiment(symbol)
                ttl = self.reader.ttl_remaining(CacheKind.SENTIMENT, symbol)
            except (ProviderError, CacheError) as e:
                logger.warning(f"{symbol}: sentiment unavailable: {e}")
                failures.append(DataFailure(symbol=symbol, operation="sentiment", cause=str(e)))
                continue

            row = SentimentRow(
                symbol=symbol,
                score=reading.value,
                source=reading.source,
                ttl_remaining=ttl,
                recommendation=classify_sentiment(reading.value, self.positive_threshold, self.negative_threshold),
            )
            rows.append(row)
            ttl_text = f"{row.ttl_remaining:.0f}s" if row.ttl_remaining is not None else "n/a"
            logger.info(
                f"{row.symbol:<8} sentiment={row.score:.2f} source={row.source} "
                f"ttl={ttl_text} -> {row.recommendation}"
            )
        return rows, failures


def order_market_rows(rows: List[MarketRow], pinned: List[str], sort_by: str = "market_cap") -> List[MarketRow]:
    """
    Pinned symbols first (in pinned order), everything else by ``sort_by`` descending.

    Raises:
        ValueError: unknown sort key
    """
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {sort_by}")

    by_symbol = {row.symbol: row for row in rows}
    head = [by_symbol[s] for s in pinned if s in by_symbol]
    pinned_set = set(pinned)
    tail = sorted(
        (row for row in rows if row.symbol not in pinned_set),
        key=lambda row: getattr(row, sort_by),
        reverse=True,
    )
    return head + tail


class MarketScreen:
    """Price, market cap and 24h change for a symbol list."""

    def __init__(self, gateway, symbols: List[str], pinned: Optional[List[str]] = None, sort_by: str = "market_cap"):
        self.gateway = gateway
        self.symbols = list(symbols)
        self.pinned = list(pinned or [])
        self.sort_by = sort_by

    def refresh(self) -> Tuple[List[MarketRow], List[DataFailure]]:
        try:
            rows = self.gateway.fetch_market_data(self.symbols)
        except ProviderError as e:
            logger.warning(f"Market data unavailable: {e}")
            return [], [DataFailure(symbol=e.symbol, operation="market_data", cause=e.cause)]

        ordered = order_market_rows(rows, self.pinned, self.sort_by)
        for row in ordered:
            marker = "*" if row.symbol in self.pinned else " "
            logger.info(
                f"{marker}{row.symbol:<8} ${row.price:,.4f}  cap=${row.market_cap:,.0f}  "
                f"24h={row.price_change_24h:+.2f}%"
            )
        return ordered, []
