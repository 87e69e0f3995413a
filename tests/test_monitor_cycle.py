"""
Tests for MonitorCyclePipeline - one cycle end to end.

Uses real cache, risk engine and change detector with in-memory gateways,
a recording ledger and a mock notifier.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from core.change_detector import ALERT_HOLDING_PRICE, ChangeDetector, NotificationThresholds
from core.exceptions import CacheError, CycleCancelled, ProviderError
from core.market_data import MarketDataReader
from core.monitor_cycle import MonitorCyclePipeline
from core.portfolio import CycleSnapshot, Holding, Portfolio
from core.risk import RiskEngine, RiskPolicy
from infra.alerting import Channel, ChannelConfig, DeliveryReport, NotificationService


TS = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingLedger:
    def __init__(self):
        self.records = []

    def append(self, record):
        self.records.append(record)
        return len(self.records)


class DictGateway:
    """Prices/sentiments from mutable dicts; missing symbols raise ProviderError."""

    def __init__(self, prices, sentiments):
        self.prices = prices
        self.sentiments = sentiments
        self.price_calls = []

    def fetch_price(self, symbol):
        self.price_calls.append(symbol)
        if symbol not in self.prices:
            raise ProviderError(symbol, "fetch_price", "HTTP 503")
        return self.prices[symbol]

    def fetch_sentiment(self, symbol):
        if symbol not in self.sentiments:
            raise ProviderError(symbol, "fetch_sentiment", "timeout")
        return self.sentiments[symbol]


@pytest.fixture
def gateway():
    return DictGateway(
        prices={"PHA": 0.20, "SUI": 3.00, "DUSK": 0.25},
        sentiments={"PHA": 0.5, "SUI": 0.6, "DUSK": 0.5},
    )


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify.return_value = DeliveryReport(delivered=["email"])
    mock.notify_action.return_value = DeliveryReport(delivered=["email"])
    return mock


@pytest.fixture
def ledger():
    return RecordingLedger()


@pytest.fixture
def pipeline(gateway, memory_cache, ledger, notifier):
    reader = MarketDataReader(gateway, gateway, memory_cache, sentiment_ttl_seconds=3600)
    engine = RiskEngine(
        RiskPolicy(max_allocation=0.6, negative_threshold=0.3, positive_threshold=0.7),
        ledger,
        clock=lambda: TS,
    )
    detector = ChangeDetector(
        NotificationThresholds(
            portfolio_value_change_percent=5.0,
            holding_value_change_percent=10.0,
            sentiment_change=0.2,
        )
    )
    return MonitorCyclePipeline(reader, engine, detector, notifier)


@pytest.fixture
def portfolio():
    # PHA 50, SUI 30, DUSK 20, cash 0 -> total 100, nothing over the 60% cap
    return Portfolio(
        holdings=[
            Holding(symbol="PHA", quantity=250.0, purchase_price=0.20, stop_loss=0.16),
            Holding(symbol="SUI", quantity=10.0, purchase_price=3.00, stop_loss=2.40),
            Holding(symbol="DUSK", quantity=80.0, purchase_price=0.25, stop_loss=0.20),
        ],
        cash=0.0,
    )


class TestFirstCycle:
    def test_snapshot_and_no_alerts(self, pipeline, portfolio, notifier):
        result = pipeline.execute_cycle(portfolio, None)

        assert result.status == "ok"
        assert result.alerts == []
        assert result.actions == []
        assert result.snapshot.prices == {"PHA": 0.20, "SUI": 3.00, "DUSK": 0.25}
        assert result.snapshot.sentiments == {"PHA": 0.5, "SUI": 0.6, "DUSK": 0.5}
        assert result.snapshot.total_value == pytest.approx(100.0)
        notifier.notify.assert_not_called()
        notifier.notify_action.assert_not_called()

    def test_fetches_in_holding_order(self, pipeline, portfolio, gateway):
        pipeline.execute_cycle(portfolio, None)
        assert gateway.price_calls == ["PHA", "SUI", "DUSK"]


class TestSecondCycle:
    def test_price_move_alerts(self, pipeline, portfolio, gateway, notifier, clock):
        first = pipeline.execute_cycle(portfolio, None)
        clock.advance(3600)
        gateway.prices["SUI"] = 3.50

        result = pipeline.execute_cycle(portfolio, first.snapshot)

        kinds = [(a.kind, a.symbol) for a in result.alerts]
        assert (ALERT_HOLDING_PRICE, "SUI") in kinds
        subjects = [c[0][0] for c in notifier.notify.call_args_list]
        assert "Holding Price Change Alert" in subjects
        assert len(notifier.notify.call_args_list) == len(result.alerts)

    def test_cached_values_within_ttl(self, pipeline, portfolio, gateway):
        first = pipeline.execute_cycle(portfolio, None)
        gateway.prices["SUI"] = 9.99

        result = pipeline.execute_cycle(portfolio, first.snapshot)

        assert result.snapshot.prices["SUI"] == 3.00
        assert result.alerts == []


class TestRiskActions:
    def test_stop_loss_notifies_action(self, pipeline, portfolio, gateway, ledger, notifier):
        gateway.prices["DUSK"] = 0.19

        result = pipeline.execute_cycle(portfolio, None)

        assert portfolio.get("DUSK") is None
        assert portfolio.cash == pytest.approx(15.2)
        assert [r.symbol for r in ledger.records] == ["DUSK"]
        notifier.notify_action.assert_called_once_with(result.actions[0])
        assert result.snapshot.prices["DUSK"] == 0.19

    def test_notification_failure_keeps_trade(self, pipeline, portfolio, gateway, ledger, notifier):
        notifier.notify_action.return_value = DeliveryReport(failed={"sms": "down", "email": "down"})
        gateway.prices["DUSK"] = 0.19

        result = pipeline.execute_cycle(portfolio, None)

        assert result.notification_failures == 2
        assert portfolio.get("DUSK") is None
        assert len(ledger.records) == 1

    @patch("infra.alerting.urllib.request.urlopen")
    def test_sms_connection_reset_does_not_abort_cycle(self, mock_urlopen, pipeline, portfolio, gateway, ledger):
        mock_urlopen.side_effect = ConnectionResetError("reset by peer")
        email = MagicMock()
        pipeline.notifier = NotificationService(
            {
                Channel.SMS: ChannelConfig(enabled=True, transport="webhook", webhook_url="https://relay.example.test/sms"),
                Channel.EMAIL: ChannelConfig(enabled=True),
            },
            transports={Channel.EMAIL: email},
        )
        gateway.prices["DUSK"] = 0.19

        result = pipeline.execute_cycle(portfolio, None)

        assert result.notification_failures == 1
        email.send.assert_called_once()
        assert len(ledger.records) == 1
        assert result.snapshot.prices["DUSK"] == 0.19


class TestFailures:
    def test_provider_error_scoped_to_symbol(self, pipeline, portfolio, gateway, clock):
        first = pipeline.execute_cycle(portfolio, None)
        clock.advance(3600)
        del gateway.prices["PHA"]
        gateway.prices["SUI"] = 2.0

        result = pipeline.execute_cycle(portfolio, first.snapshot)

        assert result.status == "partial"
        assert [(f.symbol, f.operation) for f in result.failures] == [("PHA", "price")]
        assert portfolio.get("PHA").quantity == 250.0
        assert portfolio.get("SUI") is None
        # last known price carried forward for the failed symbol
        assert result.snapshot.prices["PHA"] == 0.20

    def test_cache_error_recorded(self, pipeline, portfolio):
        broken = MagicMock()
        broken.get.side_effect = CacheError("get", "price:PHA", OSError("gone"))
        broken.ttl_remaining.return_value = None
        pipeline.reader.cache = broken

        result = pipeline.execute_cycle(portfolio, None)

        assert len(result.failures) == 6
        assert result.evaluation.actions == []
        assert all("cache get failed" in f.cause for f in result.failures)

    def test_unpriced_holding_carries_total_forward(self, pipeline, portfolio, gateway):
        del gateway.prices["SUI"]
        previous = CycleSnapshot(prices={"PHA": 0.20}, sentiments={}, total_value=123.0)

        result = pipeline.execute_cycle(portfolio, previous)

        assert result.snapshot.total_value == 123.0
        assert result.evaluation.rebalance_skipped_reason == "no known price for SUI"

    def test_data_errors_counted(self, pipeline, portfolio, gateway):
        metrics = MagicMock()
        pipeline.metrics = metrics
        del gateway.sentiments["DUSK"]

        pipeline.execute_cycle(portfolio, None)

        metrics.record_data_error.assert_called_once_with("provider_sentiment")
        metrics.record_portfolio.assert_called_once()


class TestCancellation:
    def test_cancel_mid_fetch_leaves_portfolio_untouched(self, pipeline, portfolio, gateway, ledger):
        gateway.prices["PHA"] = 0.01  # would liquidate
        calls = iter([True, False])

        with pytest.raises(CycleCancelled):
            pipeline.execute_cycle(portfolio, None, should_continue=lambda: next(calls))

        assert gateway.price_calls == ["PHA"]
        assert portfolio.get("PHA").quantity == 250.0
        assert ledger.records == []
