"""
holdwatch Runner: Main Loop

Orchestrates one screen per process.

Screens:
- portfolio: refresh data -> risk evaluation -> change detection -> notify
- sentiment: cached sentiment scores with a recommendation per symbol
- market:    price, market cap and 24h change, pinned symbols first

Each screen runs a cycle, then sleeps for its interval; cycles never overlap.
SIGINT/SIGTERM stop the loop; a cycle still fetching data is abandoned before
it mutates anything.
"""

import signal
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional
import logging

from analytics.trade_ledger import TradeLedger
from core.change_detector import ChangeDetector, NotificationThresholds
from core.exceptions import CacheError, ConfigurationError, CycleCancelled
from core.exchange import create_price_gateway
from core.market_data import MarketDataReader
from core.monitor_cycle import MonitorCyclePipeline
from core.portfolio import CycleSnapshot, Portfolio, build_holdings
from core.risk import RiskEngine, RiskPolicy
from core.sentiment import create_sentiment_gateway
from infra.alerting import NotificationService
from infra.metrics import CycleStats, MetricsRecorder
from infra.quote_cache import create_quote_cache_from_config
from runner.screens import MarketScreen, SentimentScreen
from tools.config_validator import load_config

logger = logging.getLogger(__name__)

SCREENS = ("portfolio", "sentiment", "market")


class MonitorLoop:
    """
    Main monitoring loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Build the components the selected screen needs
    - Run periodic cycles, carrying the CycleSnapshot forward
    - Stop cleanly on shutdown signals
    """

    def __init__(self, config_dir: str = "config", screen: str = "portfolio", install_signal_handlers: bool = True):
        if screen not in SCREENS:
            raise ValueError(f"Unknown screen: {screen} (expected one of {', '.join(SCREENS)})")
        self.screen = screen
        self.config_dir = Path(config_dir)

        try:
            self.config = load_config(config_dir)
        except ConfigurationError as e:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(e.errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise

        app = self.config.app
        policy = self.config.policy
        self.environment = app.app.environment
        self._setup_logging()

        logger.info(f"Starting holdwatch screen={self.screen} environment={self.environment}")

        self.metrics = MetricsRecorder(
            enabled=app.monitoring.metrics_enabled,
            port=app.monitoring.metrics_port,
        )
        self.metrics.start()

        self.cache = create_quote_cache_from_config(app.state.model_dump())
        self.reader = MarketDataReader(
            price_gateway=create_price_gateway(app.gateway.price.model_dump()),
            sentiment_gateway=create_sentiment_gateway(app.gateway.sentiment.model_dump()),
            cache=self.cache,
            sentiment_ttl_seconds=policy.sentiment.cache_ttl_seconds,
            metrics=self.metrics,
        )

        symbols = [h.symbol for h in policy.portfolio.holdings]
        self.pipeline: Optional[MonitorCyclePipeline] = None
        self.portfolio: Optional[Portfolio] = None
        self.sentiment_screen: Optional[SentimentScreen] = None
        self.market_screen: Optional[MarketScreen] = None
        self.snapshot: Optional[CycleSnapshot] = None

        if self.screen == "portfolio":
            self.portfolio = Portfolio(
                holdings=build_holdings(
                    [h.model_dump() for h in policy.portfolio.holdings],
                    stop_loss_percentage=policy.risk.stop_loss_percentage,
                ),
                cash=policy.portfolio.cash,
            )
            self.ledger = TradeLedger(db_file=app.ledger.db_file, jsonl_mirror=app.ledger.jsonl_mirror)
            self.pipeline = MonitorCyclePipeline(
                reader=self.reader,
                risk_engine=RiskEngine(RiskPolicy.from_config(policy.model_dump()), self.ledger, metrics=self.metrics),
                change_detector=ChangeDetector(
                    NotificationThresholds.from_config(policy.notification_thresholds.model_dump())
                ),
                notifier=NotificationService.from_config(app.notifications.model_dump(), metrics=self.metrics),
                metrics=self.metrics,
            )
        elif self.screen == "sentiment":
            self.sentiment_screen = SentimentScreen(
                self.reader,
                symbols,
                positive_threshold=policy.sentiment.positive_threshold,
                negative_threshold=policy.sentiment.negative_threshold,
            )
        else:
            market_symbols = symbols + [s for s in policy.market.symbols if s not in symbols]
            self.market_screen = MarketScreen(
                create_price_gateway(app.gateway.market.model_dump()),
                market_symbols,
                pinned=policy.market.pinned,
                sort_by=policy.market.sort_by,
            )

        self.loop_interval_seconds = float(getattr(app.loop, f"{self.screen}_interval_seconds"))

        # Shutdown flag
        self._stop_event = threading.Event()
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized MonitorLoop (screen={self.screen}, cache={self.cache.describe()})")

    def _setup_logging(self) -> None:
        log_cfg = self.config.app.logging
        default_level = "DEBUG" if self.environment == "dev" else "INFO"
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        if self.environment == "prod":
            log_path = Path(log_cfg.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))

        logging.basicConfig(
            level=getattr(logging, (log_cfg.level or default_level).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _handle_stop(self, *_):
        """Stop after the current cycle; abandon it if still fetching."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after current cycle")
        logger.warning("=" * 80)
        self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def _should_continue(self) -> bool:
        return not self._stop_event.is_set()

    def run_cycle(self) -> Optional[CycleStats]:
        """
        Run one cycle of the selected screen.

        Returns:
            CycleStats, or None when the cycle was abandoned for shutdown
        """
        start = time.monotonic()
        actions = alerts = errors = 0

        try:
            if self.screen == "portfolio":
                result = self.pipeline.execute_cycle(
                    self.portfolio, self.snapshot, should_continue=self._should_continue
                )
                self.snapshot = result.snapshot
                status = result.status
                actions = len(result.evaluation.actions)
                alerts = len(result.alerts)
                errors = len(result.failures)
            elif self.screen == "sentiment":
                _, failures = self.sentiment_screen.refresh(should_continue=self._should_continue)
                errors = len(failures)
                status = "partial" if failures else "ok"
            else:
                _, failures = self.market_screen.refresh()
                errors = len(failures)
                status = "partial" if failures else "ok"
        except CycleCancelled as e:
            logger.warning(f"Cycle abandoned: {e}")
            return None
        except Exception as e:
            logger.error(f"Cycle failed: {e}", exc_info=True)
            status = "error"
            errors += 1

        try:
            self.cache.purge_expired()
        except CacheError as e:
            logger.warning(f"Cache purge failed: {e}")

        stats = CycleStats(
            status=status,
            actions=actions,
            alerts=alerts,
            errors=errors,
            duration_seconds=time.monotonic() - start,
        )
        self.metrics.observe_cycle(stats)
        return stats

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run the screen continuously.

        Args:
            interval_seconds: Seconds between cycle starts (defaults to the screen's configured interval)
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds

        logger.info(f"Starting continuous loop (screen={self.screen}, interval={configured_interval}s)")

        while self.running:
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start

            sleep_for = max(0.0, configured_interval - elapsed)
            logger.debug(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            # wakes early on shutdown
            self._stop_event.wait(sleep_for)

        logger.info("Monitoring loop stopped cleanly.")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="holdwatch portfolio monitor")
    parser.add_argument("screen", nargs="?", default="portfolio", choices=SCREENS, help="Screen to run (default: portfolio)")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: from app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args(argv)

    try:
        # Create loop (logging configured in __init__)
        loop = MonitorLoop(config_dir=args.config_dir, screen=args.screen)
    except ConfigurationError as e:
        logger.critical(f"Cannot start: {e}")
        return 1

    if args.once:
        loop.run_cycle()
    else:
        loop.run_forever(interval_seconds=args.interval)
    return 0


if __name__ == "__main__":
    sys.exit(main())
