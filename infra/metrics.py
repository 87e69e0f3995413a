"""Prometheus-backed metrics hooks for the monitoring loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "holdwatch_"


@dataclass
class CycleStats:
    status: str
    actions: int
    alerts: int
    errors: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose monitoring loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._cache_lookups: Dict[str, int] = {}

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._portfolio_gauge = None
            self._actions_counter = None
            self._proceeds_counter = None
            self._alerts_counter = None
            self._delivery_failures_counter = None
            self._data_errors_counter = None
            self._cache_counter = None
            return

        self._cycle_summary = Summary(
            f"{METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full monitoring cycle",
        )
        self._cycle_counter = Counter(
            f"{METRIC_PREFIX}cycle_total",
            "Total monitoring cycles by status",
            labelnames=("status",),
        )
        self._portfolio_gauge = Gauge(
            f"{METRIC_PREFIX}portfolio_usd",
            "Portfolio valuation after the last cycle",
            labelnames=("component",),  # "total", "cash"
        )
        self._actions_counter = Counter(
            f"{METRIC_PREFIX}risk_actions_total",
            "Liquidations and trims executed, by reason",
            labelnames=("reason",),
        )
        self._proceeds_counter = Counter(
            f"{METRIC_PREFIX}realized_proceeds_usd_total",
            "Cash credited by simulated sales",
        )
        self._alerts_counter = Counter(
            f"{METRIC_PREFIX}alerts_total",
            "Change alerts raised, by kind",
            labelnames=("kind",),
        )
        self._delivery_failures_counter = Counter(
            f"{METRIC_PREFIX}notification_failures_total",
            "Notification delivery failures, by channel",
            labelnames=("channel",),
        )
        self._data_errors_counter = Counter(
            f"{METRIC_PREFIX}data_errors_total",
            "Provider and cache failures, by operation",
            labelnames=("operation",),
        )
        self._cache_counter = Counter(
            f"{METRIC_PREFIX}cache_lookups_total",
            "Cache lookups by kind and outcome",
            labelnames=("kind", "outcome"),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
            self._started = True
            logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            assert self._cycle_summary and self._cycle_counter
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()
        self._last_cycle_stats = stats

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def record_portfolio(self, total_value: float, cash: float) -> None:
        if self._enabled and self._portfolio_gauge:
            self._portfolio_gauge.labels(component="total").set(total_value)
            self._portfolio_gauge.labels(component="cash").set(cash)

    def record_risk_action(self, reason: str, proceeds: float) -> None:
        if self._enabled and self._actions_counter and self._proceeds_counter:
            self._actions_counter.labels(reason=reason).inc()
            if proceeds > 0:
                self._proceeds_counter.inc(proceeds)

    def record_alert(self, kind: str) -> None:
        if self._enabled and self._alerts_counter:
            self._alerts_counter.labels(kind=kind).inc()

    def record_delivery_failure(self, channel: str) -> None:
        if self._enabled and self._delivery_failures_counter:
            self._delivery_failures_counter.labels(channel=channel).inc()

    def record_data_error(self, operation: str) -> None:
        if self._enabled and self._data_errors_counter:
            self._data_errors_counter.labels(operation=operation).inc()

    def record_cache_lookup(self, kind: str, hit: bool) -> None:
        outcome = "hit" if hit else "miss"
        key = f"{kind}:{outcome}"
        self._cache_lookups[key] = self._cache_lookups.get(key, 0) + 1
        if self._enabled and self._cache_counter:
            self._cache_counter.labels(kind=kind, outcome=outcome).inc()

    def cache_lookup_snapshot(self) -> Dict[str, int]:
        return dict(self._cache_lookups)


__all__ = ["MetricsRecorder", "CycleStats"]
