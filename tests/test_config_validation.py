"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
import copy

import pytest
import yaml

from core.exceptions import ConfigurationError
from tools.config_validator import (
    AppSchema,
    PolicySchema,
    load_config,
    load_yaml_file,
    validate_all_configs,
    validate_policy,
)


VALID_POLICY = {
    "portfolio": {
        "cash": 0.0,
        "holdings": [
            {"symbol": "PHA", "quantity": 250, "purchase_price": 0.20, "stop_loss": 0.16},
            {"symbol": "SUI", "quantity": 10, "purchase_price": 3.00},
        ],
    },
    "risk": {"max_allocation": 0.5, "stop_loss_percentage": 0.2},
    "sentiment": {"positive_threshold": 0.7, "negative_threshold": 0.3, "cache_ttl_seconds": 3600},
    "notification_thresholds": {
        "portfolio_value_change_percent": 5.0,
        "holding_value_change_percent": 10.0,
        "sentiment_change": 0.2,
    },
    "market": {"pinned": ["PHA"], "sort_by": "market_cap"},
}

VALID_APP = {
    "app": {"environment": "dev"},
    "state": {"cache_backend": "memory"},
    "gateway": {
        "price": {"provider": "static", "prices": {"PHA": 0.2, "SUI": 3.0}},
        "sentiment": {"provider": "static", "scores": {"PHA": 0.5}},
    },
    "notifications": {"email": {"enabled": True, "transport": "log"}},
}


def _write(config_dir, app=None, policy=None):
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "app.yaml").write_text(yaml.safe_dump(app if app is not None else VALID_APP))
    (config_dir / "policy.yaml").write_text(yaml.safe_dump(policy if policy is not None else VALID_POLICY))
    return config_dir


class TestPolicyValidation:
    """Test policy.yaml validation"""

    def test_valid_policy_config(self):
        policy = PolicySchema(**VALID_POLICY)
        assert policy.risk.max_allocation == 0.5
        assert policy.portfolio.holdings[1].stop_loss is None
        assert policy.risk.sentiment_gated_rebalance is True

    @pytest.mark.parametrize("value", [0, -0.1, 1.5])
    def test_max_allocation_bounds(self, value):
        config = copy.deepcopy(VALID_POLICY)
        config["risk"]["max_allocation"] = value
        with pytest.raises(Exception):
            PolicySchema(**config)

    def test_max_allocation_of_one_allowed(self):
        config = copy.deepcopy(VALID_POLICY)
        config["risk"]["max_allocation"] = 1.0
        assert PolicySchema(**config).risk.max_allocation == 1.0

    def test_thresholds_out_of_range(self):
        config = copy.deepcopy(VALID_POLICY)
        config["sentiment"]["positive_threshold"] = 1.2
        with pytest.raises(Exception):
            PolicySchema(**config)

    def test_negative_must_be_below_positive(self):
        config = copy.deepcopy(VALID_POLICY)
        config["sentiment"]["negative_threshold"] = 0.7
        with pytest.raises(Exception, match="must be below"):
            PolicySchema(**config)

    def test_duplicate_symbols_rejected(self):
        config = copy.deepcopy(VALID_POLICY)
        config["portfolio"]["holdings"].append({"symbol": "PHA", "quantity": 1, "purchase_price": 0.2})
        with pytest.raises(Exception, match="Duplicate holding symbol"):
            PolicySchema(**config)

    def test_negative_quantity_rejected(self):
        config = copy.deepcopy(VALID_POLICY)
        config["portfolio"]["holdings"][0]["quantity"] = -1
        with pytest.raises(Exception):
            PolicySchema(**config)

    def test_negative_cash_rejected(self):
        config = copy.deepcopy(VALID_POLICY)
        config["portfolio"]["cash"] = -5
        with pytest.raises(Exception):
            PolicySchema(**config)

    def test_unknown_sort_key(self):
        config = copy.deepcopy(VALID_POLICY)
        config["market"]["sort_by"] = "volume"
        with pytest.raises(Exception):
            PolicySchema(**config)

    def test_missing_section_reported(self, tmp_path):
        config = copy.deepcopy(VALID_POLICY)
        del config["risk"]
        _write(tmp_path, policy=config)
        errors = validate_policy(tmp_path)
        assert any(e.startswith("policy.yaml: risk") for e in errors)


class TestAppValidation:
    def test_defaults(self):
        app = AppSchema()
        assert app.app.environment == "dev"
        assert app.state.cache_backend == "memory"
        assert app.gateway.price.provider == "binance"
        assert app.notifications.sms.enabled is False

    def test_provider_extras_pass_through(self):
        app = AppSchema(**VALID_APP)
        assert app.gateway.price.model_dump()["prices"] == {"PHA": 0.2, "SUI": 3.0}

    def test_unknown_price_provider(self):
        config = copy.deepcopy(VALID_APP)
        config["gateway"]["price"]["provider"] = "kraken"
        with pytest.raises(Exception, match="price provider"):
            AppSchema(**config)

    def test_unknown_environment(self):
        with pytest.raises(Exception):
            AppSchema(app={"environment": "staging"})

    def test_webhook_requires_target(self):
        config = copy.deepcopy(VALID_APP)
        config["notifications"]["sms"] = {"enabled": True, "transport": "webhook"}
        with pytest.raises(Exception, match="webhook_url or webhook_env"):
            AppSchema(**config)


class TestLoadConfig:
    def test_valid_directory(self, tmp_path):
        _write(tmp_path)
        loaded = load_config(str(tmp_path))
        assert loaded.policy.portfolio.holdings[0].symbol == "PHA"
        assert loaded.app.gateway.sentiment.provider == "static"
        assert validate_all_configs(str(tmp_path)) == []

    def test_missing_file(self, tmp_path):
        tmp_path.mkdir(exist_ok=True)
        (tmp_path / "policy.yaml").write_text(yaml.safe_dump(VALID_POLICY))

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(tmp_path))
        assert any("app.yaml" in e and "not found" in e for e in exc_info.value.errors)

    def test_every_problem_listed(self, tmp_path):
        policy = copy.deepcopy(VALID_POLICY)
        policy["risk"]["max_allocation"] = 2
        policy["portfolio"]["cash"] = -1
        _write(tmp_path, policy=policy)

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(tmp_path))
        assert len(exc_info.value.errors) == 2

    def test_static_price_missing_for_holding(self, tmp_path):
        app = copy.deepcopy(VALID_APP)
        app["gateway"]["price"]["prices"] = {"PHA": 0.2}
        _write(tmp_path, app=app)

        errors = validate_all_configs(str(tmp_path))
        assert errors == ["app.yaml: gateway -> price -> prices: no static price for SUI"]

    def test_pinned_symbol_must_be_known(self, tmp_path):
        policy = copy.deepcopy(VALID_POLICY)
        policy["market"]["pinned"] = ["BTC"]
        _write(tmp_path, policy=policy)

        errors = validate_all_configs(str(tmp_path))
        assert len(errors) == 1
        assert "BTC" in errors[0]

    def test_malformed_yaml_has_line_context(self, tmp_path):
        _write(tmp_path)
        (tmp_path / "app.yaml").write_text("app:\n  environment: dev\n  bad: [unclosed\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(tmp_path))
        message = exc_info.value.errors[0]
        assert message.startswith("app.yaml: Invalid YAML")
        assert "line" in message

    def test_empty_app_file_uses_defaults(self, tmp_path):
        _write(tmp_path)
        (tmp_path / "app.yaml").write_text("")
        assert load_yaml_file(tmp_path / "app.yaml") == {}
        assert load_config(str(tmp_path)).app.gateway.price.provider == "binance"


def test_shipped_config_is_valid():
    from pathlib import Path

    config_dir = Path(__file__).resolve().parent.parent / "config"
    assert validate_all_configs(str(config_dir)) == []
