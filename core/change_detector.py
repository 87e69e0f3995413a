"""
holdwatch Core: Change Detector

Diffs the current cycle against the previous CycleSnapshot and produces one
alert per threshold crossing:

- portfolio value: relative change (%) vs portfolio_value_change_percent
- per-symbol price: relative change (%) vs holding_value_change_percent
- per-symbol sentiment: absolute change vs sentiment_change

All comparisons are strict: a change exactly at the threshold does not fire.
Nothing fires on the first cycle (no previous snapshot).
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from core.portfolio import CycleSnapshot

logger = logging.getLogger(__name__)

ALERT_PORTFOLIO_VALUE = "portfolio_value"
ALERT_HOLDING_PRICE = "holding_price"
ALERT_SENTIMENT = "sentiment"

THRESHOLD_TOLERANCE = 1e-9


@dataclass(frozen=True)
class NotificationThresholds:
    portfolio_value_change_percent: float
    holding_value_change_percent: float
    sentiment_change: float

    def __post_init__(self):
        for name in ("portfolio_value_change_percent", "holding_value_change_percent", "sentiment_change"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @classmethod
    def from_config(cls, cfg: Dict) -> "NotificationThresholds":
        return cls(
            portfolio_value_change_percent=float(cfg["portfolio_value_change_percent"]),
            holding_value_change_percent=float(cfg["holding_value_change_percent"]),
            sentiment_change=float(cfg["sentiment_change"]),
        )


@dataclass(frozen=True)
class ChangeAlert:
    kind: str
    subject: str
    body: str
    previous: float
    current: float
    change: float
    symbol: Optional[str] = None


def percent_change(previous: float, current: float) -> Optional[float]:
    """Signed change in percent of ``|previous|``; None when previous is zero."""
    if previous == 0:
        return None
    return (current - previous) / abs(previous) * 100.0


def exceeds(change: float, threshold: float) -> bool:
    """Strictly greater in magnitude; float noise at the boundary counts as equal."""
    return abs(change) - threshold > THRESHOLD_TOLERANCE


class ChangeDetector:
    """Threshold-gated cycle-over-cycle comparisons."""

    def __init__(self, thresholds: NotificationThresholds):
        self.thresholds = thresholds

    def detect(self, previous: Optional[CycleSnapshot], current: CycleSnapshot) -> List[ChangeAlert]:
        if previous is None:
            logger.debug("No previous snapshot; skipping change detection")
            return []

        alerts: List[ChangeAlert] = []

        value_alert = self._check_portfolio_value(previous.total_value, current.total_value)
        if value_alert:
            alerts.append(value_alert)

        for symbol, current_price in current.prices.items():
            previous_price = previous.prices.get(symbol)
            if previous_price is None:
                continue
            alert = self._check_price(symbol, previous_price, current_price)
            if alert:
                alerts.append(alert)

        for symbol, current_sentiment in current.sentiments.items():
            previous_sentiment = previous.sentiments.get(symbol)
            if previous_sentiment is None:
                continue
            alert = self._check_sentiment(symbol, previous_sentiment, current_sentiment)
            if alert:
                alerts.append(alert)

        if alerts:
            logger.info(f"Change detector fired {len(alerts)} alert(s)")
        return alerts

    def _check_portfolio_value(self, previous: float, current: float) -> Optional[ChangeAlert]:
        change = percent_change(previous, current)
        if change is None:
            logger.debug("Previous portfolio value is zero; no relative change")
            return None
        if not exceeds(change, self.thresholds.portfolio_value_change_percent):
            return None
        return ChangeAlert(
            kind=ALERT_PORTFOLIO_VALUE,
            subject="Portfolio Value Change Alert",
            body=f"Portfolio value changed by {change:.2f}%: Previous ${previous:.2f}, Current ${current:.2f}",
            previous=previous,
            current=current,
            change=change,
        )

    def _check_price(self, symbol: str, previous: float, current: float) -> Optional[ChangeAlert]:
        change = percent_change(previous, current)
        if change is None or not exceeds(change, self.thresholds.holding_value_change_percent):
            return None
        return ChangeAlert(
            kind=ALERT_HOLDING_PRICE,
            subject="Holding Price Change Alert",
            body=f"{symbol} price changed by {change:.2f}%: Previous ${previous:.2f}, Current ${current:.2f}",
            previous=previous,
            current=current,
            change=change,
            symbol=symbol,
        )

    def _check_sentiment(self, symbol: str, previous: float, current: float) -> Optional[ChangeAlert]:
        change = current - previous
        if not exceeds(change, self.thresholds.sentiment_change):
            return None
        return ChangeAlert(
            kind=ALERT_SENTIMENT,
            subject="Sentiment Change Alert",
            body=f"{symbol} sentiment changed by {change:.2f}: Previous {previous:.2f}, Current {current:.2f}",
            previous=previous,
            current=current,
            change=change,
            symbol=symbol,
        )
