"""
holdwatch Core: Risk Engine

Per-cycle sell/trim decisions over the portfolio, in two ordered passes:

1. Liquidation: full exit when price <= stop-loss OR sentiment < negative threshold
2. Rebalancing: trim survivors whose allocation exceeds max_allocation

Every sale is simulated: proceeds go to the in-memory cash balance and one
``sell`` record goes to the trade ledger. A mutation and its ledger append
are applied as one unit; if the append fails the mutation is undone.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging

from analytics.trade_ledger import ACTION_SELL, TradeRecord, utc_now
from core.exceptions import LedgerError
from core.portfolio import Holding, Portfolio

logger = logging.getLogger(__name__)

REASON_STOP_LOSS = "stop_loss"
REASON_SENTIMENT = "sentiment"
REASON_REBALANCE = "rebalance"

# Quantities at or below this are treated as fully sold
QUANTITY_EPSILON = 1e-12


@dataclass
class RiskPolicy:
    """Thresholds the engine enforces."""
    max_allocation: float
    negative_threshold: float
    positive_threshold: float
    sentiment_gated_rebalance: bool = True

    @classmethod
    def from_config(cls, policy: Dict) -> "RiskPolicy":
        risk_cfg = policy.get("risk", {}) or {}
        sentiment_cfg = policy.get("sentiment", {}) or {}
        return cls(
            max_allocation=float(risk_cfg["max_allocation"]),
            negative_threshold=float(sentiment_cfg["negative_threshold"]),
            positive_threshold=float(sentiment_cfg["positive_threshold"]),
            sentiment_gated_rebalance=bool(risk_cfg.get("sentiment_gated_rebalance", True)),
        )


@dataclass
class RiskAction:
    """A liquidation or trim the engine executed."""
    symbol: str
    kind: str  # "liquidate" or "trim"
    reason: str  # stop_loss / sentiment / rebalance
    quantity: float
    price: float
    proceeds: float
    sentiment: float
    remaining_quantity: float = 0.0
    allocation: Optional[float] = None

    def describe(self) -> str:
        if self.kind == "liquidate":
            trigger = "stop-loss hit" if self.reason == REASON_STOP_LOSS else "negative sentiment"
            return (
                f"{self.symbol}: {trigger} at ${self.price:.2f} (sentiment: {self.sentiment:.2f}), "
                f"sold {self.quantity:g} for ${self.proceeds:.2f}"
            )
        return (
            f"{self.symbol}: allocation {self.allocation:.1%} over cap, "
            f"sold {self.quantity:.6f} at ${self.price:.2f} for ${self.proceeds:.2f} "
            f"({self.remaining_quantity:.6f} remaining)"
        )


@dataclass
class SkippedSymbol:
    symbol: str
    stage: str  # "liquidation" or "rebalance"
    reason: str


@dataclass
class RiskEvaluation:
    """Outcome of one evaluation."""
    actions: List[RiskAction] = field(default_factory=list)
    skipped: List[SkippedSymbol] = field(default_factory=list)
    total_value: Optional[float] = None
    rebalance_skipped_reason: Optional[str] = None

    @property
    def descriptions(self) -> List[str]:
        return [a.describe() for a in self.actions]

    @property
    def liquidations(self) -> List[RiskAction]:
        return [a for a in self.actions if a.kind == "liquidate"]

    @property
    def trims(self) -> List[RiskAction]:
        return [a for a in self.actions if a.kind == "trim"]


class RiskEngine:
    """
    Applies stop-loss, sentiment-floor and max-allocation rules.

    The engine only reads the prices and sentiments it is handed. A symbol
    missing from either map is left untouched this cycle; that is how a
    provider or cache failure is scoped to one holding.
    """

    def __init__(
        self,
        policy: RiskPolicy,
        ledger,
        clock: Optional[Callable[[], datetime]] = None,
        metrics=None,
    ):
        self.policy = policy
        self.ledger = ledger
        self._clock = clock or utc_now
        self.metrics = metrics

        logger.info(
            f"Initialized RiskEngine (max_allocation={policy.max_allocation:.2%}, "
            f"negative<{policy.negative_threshold}, positive>={policy.positive_threshold}, "
            f"gated={policy.sentiment_gated_rebalance})"
        )

    def evaluate(
        self,
        portfolio: Portfolio,
        prices: Dict[str, float],
        sentiments: Dict[str, float],
        fallback_prices: Optional[Dict[str, float]] = None,
    ) -> RiskEvaluation:
        """
        Run both passes against ``portfolio`` (mutated in place).

        Args:
            portfolio: Holdings and cash to evaluate
            prices: Fresh prices for this cycle
            sentiments: Fresh sentiment scores for this cycle
            fallback_prices: Last known prices, used only to value holdings
                whose fresh price is unavailable

        Returns:
            RiskEvaluation with executed actions and skipped symbols
        """
        result = RiskEvaluation()
        self._liquidation_pass(portfolio, prices, sentiments, result)
        self._rebalance_pass(portfolio, prices, sentiments, fallback_prices or {}, result)

        for description in result.descriptions:
            logger.info(f"RISK ACTION: {description}")
        return result

    # ----- pass 1 -----

    def _liquidation_pass(
        self,
        portfolio: Portfolio,
        prices: Dict[str, float],
        sentiments: Dict[str, float],
        result: RiskEvaluation,
    ) -> None:
        for holding in list(portfolio.holdings):
            price = prices.get(holding.symbol)
            sentiment = sentiments.get(holding.symbol)
            if price is None or sentiment is None:
                missing = "price" if price is None else "sentiment"
                self._skip(result, holding.symbol, "liquidation", f"{missing} unavailable")
                continue

            stop_hit = price <= holding.stop_loss
            sentiment_hit = sentiment < self.policy.negative_threshold
            if not (stop_hit or sentiment_hit):
                continue

            # stop-loss is the reported cause when both fire
            reason = REASON_STOP_LOSS if stop_hit else REASON_SENTIMENT
            action = self._liquidate(portfolio, holding, price, sentiment, reason)
            if action is None:
                self._skip(result, holding.symbol, "liquidation", "ledger append failed")
            else:
                result.actions.append(action)

    def _liquidate(
        self,
        portfolio: Portfolio,
        holding: Holding,
        price: float,
        sentiment: float,
        reason: str,
    ) -> Optional[RiskAction]:
        index = portfolio.index_of(holding.symbol)
        quantity = holding.quantity
        proceeds = quantity * price

        portfolio.remove(holding.symbol)
        holding.quantity = 0.0
        portfolio.cash += proceeds

        try:
            self._append(holding.symbol, quantity, price, reason)
        except LedgerError as e:
            logger.error(f"Liquidation of {holding.symbol} rolled back: {e}")
            portfolio.cash -= proceeds
            holding.quantity = quantity
            portfolio.insert(index, holding)
            return None

        self._record(reason, proceeds)
        return RiskAction(
            symbol=holding.symbol,
            kind="liquidate",
            reason=reason,
            quantity=quantity,
            price=price,
            proceeds=proceeds,
            sentiment=sentiment,
        )

    # ----- pass 2 -----

    def _rebalance_pass(
        self,
        portfolio: Portfolio,
        prices: Dict[str, float],
        sentiments: Dict[str, float],
        fallback_prices: Dict[str, float],
        result: RiskEvaluation,
    ) -> None:
        valuation: Dict[str, float] = {}
        for holding in portfolio.holdings:
            price = prices.get(holding.symbol, fallback_prices.get(holding.symbol))
            if price is None:
                result.rebalance_skipped_reason = f"no known price for {holding.symbol}"
                logger.warning(f"Skipping rebalance this cycle: {result.rebalance_skipped_reason}")
                return
            valuation[holding.symbol] = price

        # computed once: trims at the cycle price move value into cash 1:1
        total_value = portfolio.total_value(valuation)
        result.total_value = total_value
        if total_value <= 0:
            result.rebalance_skipped_reason = "portfolio has no value"
            return

        cap = self.policy.max_allocation
        already_skipped = {s.symbol for s in result.skipped}
        for holding in list(portfolio.holdings):
            # pass 1 already reported symbols without fresh data
            if holding.symbol in already_skipped:
                continue
            price = prices[holding.symbol]
            sentiment = sentiments[holding.symbol]

            holding_value = holding.value_at(price)
            allocation = holding_value / total_value
            if allocation <= cap:
                continue

            if self.policy.sentiment_gated_rebalance and sentiment >= self.policy.positive_threshold:
                logger.info(
                    f"{holding.symbol}: allocation {allocation:.1%} exceeds cap {cap:.1%} "
                    f"but sentiment {sentiment:.2f} is strong; not trimming"
                )
                continue

            excess_value = holding_value - cap * total_value
            sell_quantity = min(excess_value / price, holding.quantity)
            if sell_quantity <= 0:
                continue

            action = self._trim(portfolio, holding, price, sentiment, sell_quantity, allocation)
            if action is None:
                self._skip(result, holding.symbol, "rebalance", "ledger append failed")
            else:
                result.actions.append(action)

    def _trim(
        self,
        portfolio: Portfolio,
        holding: Holding,
        price: float,
        sentiment: float,
        sell_quantity: float,
        allocation: float,
    ) -> Optional[RiskAction]:
        original_quantity = holding.quantity
        index = portfolio.index_of(holding.symbol)
        proceeds = sell_quantity * price

        holding.quantity = max(original_quantity - sell_quantity, 0.0)
        portfolio.cash += proceeds
        removed = holding.quantity <= QUANTITY_EPSILON
        if removed:
            holding.quantity = 0.0
            portfolio.remove(holding.symbol)

        try:
            self._append(holding.symbol, sell_quantity, price, REASON_REBALANCE)
        except LedgerError as e:
            logger.error(f"Trim of {holding.symbol} rolled back: {e}")
            portfolio.cash -= proceeds
            holding.quantity = original_quantity
            if removed:
                portfolio.insert(index, holding)
            return None

        self._record(REASON_REBALANCE, proceeds)
        return RiskAction(
            symbol=holding.symbol,
            kind="trim",
            reason=REASON_REBALANCE,
            quantity=sell_quantity,
            price=price,
            proceeds=proceeds,
            sentiment=sentiment,
            remaining_quantity=holding.quantity,
            allocation=allocation,
        )

    # ----- helpers -----

    def _append(self, symbol: str, quantity: float, price: float, reason: str) -> None:
        self.ledger.append(
            TradeRecord(
                symbol=symbol,
                quantity=quantity,
                price=price,
                action=ACTION_SELL,
                timestamp=self._clock(),
                reason=reason,
            )
        )

    def _skip(self, result: RiskEvaluation, symbol: str, stage: str, reason: str) -> None:
        logger.warning(f"{symbol}: skipped {stage} ({reason})")
        result.skipped.append(SkippedSymbol(symbol=symbol, stage=stage, reason=reason))

    def _record(self, reason: str, proceeds: float) -> None:
        if self.metrics is not None:
            self.metrics.record_risk_action(reason, proceeds)
