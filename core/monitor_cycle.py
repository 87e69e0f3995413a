"""
Monitoring Cycle Pipeline - one cycle, snapshot in, snapshot out

Implements the per-cycle flow:
1. Refresh price and sentiment for every holding through the cache
2. Risk evaluation (liquidation pass, then rebalancing pass)
3. Change detection against the previous CycleSnapshot
4. Notifications for executed actions and fired alerts

The pipeline holds no state between cycles: the caller passes the previous
snapshot in and keeps the one returned, which makes a single cycle easy to
run in isolation.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging

from core.change_detector import ChangeAlert, ChangeDetector
from core.exceptions import CacheError, CycleCancelled, ProviderError
from core.market_data import MarketDataReader
from core.portfolio import CycleSnapshot, Portfolio
from core.risk import RiskEngine, RiskEvaluation

logger = logging.getLogger(__name__)


@dataclass
class DataFailure:
    """A price or sentiment that could not be read this cycle."""
    symbol: str
    operation: str  # "price" or "sentiment"
    cause: str


@dataclass
class CycleResult:
    """Result of a monitoring cycle"""
    snapshot: CycleSnapshot
    evaluation: RiskEvaluation
    alerts: List[ChangeAlert] = field(default_factory=list)
    failures: List[DataFailure] = field(default_factory=list)
    notification_failures: int = 0

    @property
    def actions(self) -> List[str]:
        return self.evaluation.descriptions

    @property
    def status(self) -> str:
        if self.failures:
            return "partial"
        return "ok"


class MonitorCyclePipeline:
    """
    Reusable monitoring cycle.

    Used by the portfolio screen of the runner and directly by tests.
    """

    def __init__(
        self,
        reader: MarketDataReader,
        risk_engine: RiskEngine,
        change_detector: ChangeDetector,
        notifier,
        metrics=None,
    ):
        """
        Initialize pipeline with core components.

        Args:
            reader: Cache-aside price/sentiment reader
            risk_engine: Liquidation and rebalancing rules
            change_detector: Threshold-gated cycle-over-cycle comparisons
            notifier: NotificationService (or anything with notify/notify_action)
            metrics: Optional MetricsRecorder
        """
        self.reader = reader
        self.risk_engine = risk_engine
        self.change_detector = change_detector
        self.notifier = notifier
        self.metrics = metrics

    def execute_cycle(
        self,
        portfolio: Portfolio,
        previous: Optional[CycleSnapshot],
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> CycleResult:
        """
        Execute one monitoring cycle.

        Args:
            portfolio: Portfolio to evaluate (mutated by the risk engine)
            previous: Snapshot returned by the previous cycle, None on the first
            should_continue: Polled between symbol fetches; returning False
                abandons the cycle before any mutation

        Returns:
            CycleResult carrying the snapshot for the next cycle

        Raises:
            CycleCancelled: shutdown requested while fetching
        """
        previous_prices = previous.prices if previous else {}
        previous_sentiments = previous.sentiments if previous else {}

        # Step 1: refresh data
        prices, sentiments, failures = self._refresh(portfolio.symbols, should_continue)

        # Step 2: risk evaluation
        evaluation = self.risk_engine.evaluate(
            portfolio, prices, sentiments, fallback_prices=previous_prices
        )

        # Step 3: change detection
        snapshot = self._build_snapshot(
            portfolio, prices, sentiments, previous, previous_prices, previous_sentiments
        )
        alerts = self.change_detector.detect(previous, snapshot)

        # Step 4: notifications (never roll back trades)
        notification_failures = self._notify(evaluation, alerts)

        if self.metrics is not None:
            self.metrics.record_portfolio(snapshot.total_value, portfolio.cash)

        logger.info(
            f"Cycle complete: value=${snapshot.total_value:.2f} cash=${portfolio.cash:.2f} "
            f"actions={len(evaluation.actions)} alerts={len(alerts)} failures={len(failures)}"
        )
        return CycleResult(
            snapshot=snapshot,
            evaluation=evaluation,
            alerts=alerts,
            failures=failures,
            notification_failures=notification_failures,
        )

    def _refresh(self, symbols: List[str], should_continue: Optional[Callable[[], bool]]):
        prices: Dict[str, float] = {}
        sentiments: Dict[str, float] = {}
        failures: List[DataFailure] = []

        for symbol in symbols:
            if should_continue is not None and not should_continue():
                raise CycleCancelled(f"shutdown requested before fetching {symbol}")

            try:
                prices[symbol] = self.reader.get_price(symbol).value
            except (ProviderError, CacheError) as e:
                failures.append(self._failure(symbol, "price", e))

            try:
                sentiments[symbol] = self.reader.get_sentiment(symbol).value
            except (ProviderError, CacheError) as e:
                failures.append(self._failure(symbol, "sentiment", e))

        return prices, sentiments, failures

    def _failure(self, symbol: str, operation: str, error: Exception) -> DataFailure:
        source = "cache" if isinstance(error, CacheError) else "provider"
        logger.warning(f"{symbol}: {operation} unavailable this cycle ({source}): {error}")
        if self.metrics is not None:
            self.metrics.record_data_error(f"{source}_{operation}")
        return DataFailure(symbol=symbol, operation=operation, cause=str(error))

    def _build_snapshot(
        self,
        portfolio: Portfolio,
        prices: Dict[str, float],
        sentiments: Dict[str, float],
        previous: Optional[CycleSnapshot],
        previous_prices: Dict[str, float],
        previous_sentiments: Dict[str, float],
    ) -> CycleSnapshot:
        held = set(portfolio.symbols)

        # carry forward the last known reading for held symbols that failed this cycle
        snapshot_prices = {s: p for s, p in previous_prices.items() if s in held and s not in prices}
        snapshot_prices.update(prices)
        snapshot_sentiments = {
            s: v for s, v in previous_sentiments.items() if s in held and s not in sentiments
        }
        snapshot_sentiments.update(sentiments)

        unpriced = [s for s in portfolio.symbols if s not in snapshot_prices]
        if unpriced and previous is not None:
            logger.warning(f"Portfolio value unknown (no price for {unpriced}); carrying forward previous value")
            total_value = previous.total_value
        else:
            total_value = portfolio.cash + sum(
                h.value_at(snapshot_prices[h.symbol]) for h in portfolio.holdings if h.symbol in snapshot_prices
            )
            if unpriced:
                logger.warning(f"Portfolio value excludes unpriced holdings {unpriced}")

        return CycleSnapshot(prices=snapshot_prices, sentiments=snapshot_sentiments, total_value=total_value)

    def _notify(self, evaluation: RiskEvaluation, alerts: List[ChangeAlert]) -> int:
        failures = 0
        for description in evaluation.descriptions:
            report = self.notifier.notify_action(description)
            failures += len(report.failed)

        for alert in alerts:
            logger.info(f"ALERT [{alert.kind}] {alert.body}")
            if self.metrics is not None:
                self.metrics.record_alert(alert.kind)
            report = self.notifier.notify(alert.subject, alert.body)
            failures += len(report.failed)
        return failures
