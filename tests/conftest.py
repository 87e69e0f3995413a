"""
Pytest configuration and fixtures for holdwatch tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from core.portfolio import Holding, Portfolio
from infra.quote_cache import MemoryCacheBackend, QuoteCache


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return QuoteCache(backend=MemoryCacheBackend(), clock=clock)


@pytest.fixture
def sample_portfolio():
    """PHA/SUI/DUSK starting book with no cash."""
    return Portfolio(
        holdings=[
            Holding(symbol="PHA", quantity=250.0, purchase_price=0.20, stop_loss=0.16),
            Holding(symbol="SUI", quantity=10.0, purchase_price=3.00, stop_loss=2.40),
            Holding(symbol="DUSK", quantity=80.0, purchase_price=0.25, stop_loss=0.20),
        ],
        cash=0.0,
    )
