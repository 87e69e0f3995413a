"""
holdwatch Core: Portfolio Model

Holdings, the portfolio that owns them, and the per-cycle snapshot the
monitoring loop carries from one cycle to the next.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class Holding:
    """A single asset position."""
    symbol: str
    quantity: float
    purchase_price: float
    stop_loss: float

    def value_at(self, price: float) -> float:
        return self.quantity * price


@dataclass
class Portfolio:
    """
    Ordered holdings plus a cash balance.

    Invariants:
    - symbols are unique
    - quantity is never negative; a holding that reaches zero is removed
    - cash only moves by realized sale proceeds
    """
    holdings: List[Holding] = field(default_factory=list)
    cash: float = 0.0

    def __post_init__(self):
        seen = set()
        for holding in self.holdings:
            if holding.symbol in seen:
                raise ValueError(f"Duplicate holding symbol: {holding.symbol}")
            if holding.quantity < 0:
                raise ValueError(f"Negative quantity for {holding.symbol}: {holding.quantity}")
            seen.add(holding.symbol)
        if self.cash < 0:
            raise ValueError(f"Cash must be non-negative, got {self.cash}")

    @property
    def symbols(self) -> List[str]:
        return [h.symbol for h in self.holdings]

    def get(self, symbol: str) -> Optional[Holding]:
        for holding in self.holdings:
            if holding.symbol == symbol:
                return holding
        return None

    def remove(self, symbol: str) -> Holding:
        for index, holding in enumerate(self.holdings):
            if holding.symbol == symbol:
                return self.holdings.pop(index)
        raise KeyError(symbol)

    def insert(self, index: int, holding: Holding) -> None:
        """Put a holding back at its original position (used to undo a liquidation)."""
        if self.get(holding.symbol) is not None:
            raise ValueError(f"Duplicate holding symbol: {holding.symbol}")
        self.holdings.insert(index, holding)

    def index_of(self, symbol: str) -> int:
        for index, holding in enumerate(self.holdings):
            if holding.symbol == symbol:
                return index
        raise KeyError(symbol)

    def total_value(self, prices: Dict[str, float]) -> float:
        """
        Cash plus the market value of every holding.

        Raises:
            KeyError: if a held symbol has no price
        """
        total = self.cash
        for holding in self.holdings:
            total += holding.value_at(prices[holding.symbol])
        return total


@dataclass(frozen=True)
class CycleSnapshot:
    """Observations from one cycle, kept only to diff against the next."""
    prices: Dict[str, float]
    sentiments: Dict[str, float]
    total_value: float


def build_holdings(entries: Iterable[dict], stop_loss_percentage: float = 0.0) -> List[Holding]:
    """
    Build holdings from configuration entries.

    A missing ``stop_loss`` is derived from the cost basis:
    ``purchase_price * (1 - stop_loss_percentage)``.
    """
    holdings = []
    for entry in entries:
        purchase_price = float(entry["purchase_price"])
        stop_loss = entry.get("stop_loss")
        if stop_loss is None:
            stop_loss = purchase_price * (1.0 - stop_loss_percentage)
            logger.debug(f"{entry['symbol']}: derived stop-loss ${stop_loss:.4f} from cost basis")
        holdings.append(
            Holding(
                symbol=str(entry["symbol"]),
                quantity=float(entry["quantity"]),
                purchase_price=purchase_price,
                stop_loss=float(stop_loss),
            )
        )
    return holdings
