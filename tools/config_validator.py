"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before the monitoring loop starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    """Deployment environment"""
    environment: str = Field(default="dev", pattern="^(dev|prod)$", description="dev -> DEBUG, prod -> INFO + log file")


class LoggingConfig(BaseModel):
    """Logging overrides"""
    level: Optional[str] = Field(default=None, pattern="^(DEBUG|INFO|WARNING|ERROR)$", description="Overrides the environment default")
    file: str = Field(default="logs/holdwatch.log", min_length=1, description="Log file used in prod")


class LoopConfig(BaseModel):
    """Per-screen cycle intervals"""
    portfolio_interval_seconds: float = Field(default=60, gt=0, description="Portfolio monitoring cadence")
    sentiment_interval_seconds: float = Field(default=300, gt=0, description="Sentiment screen cadence")
    market_interval_seconds: float = Field(default=300, gt=0, description="Market screen cadence")


class StateConfig(BaseModel):
    """Shared quote cache"""
    cache_backend: str = Field(default="memory", pattern="^(memory|json|sqlite)$", description="Cache backend")
    cache_path: Optional[str] = Field(default=None, description="File used by json/sqlite backends")


class LedgerConfig(BaseModel):
    """Trade ledger storage"""
    db_file: str = Field(default="data/trades.db", min_length=1, description="SQLite ledger path")
    jsonl_mirror: bool = Field(default=False, description="Also append every record to a JSONL file")


class ProviderConfig(BaseModel):
    """One gateway; provider-specific keys pass through untouched"""
    model_config = ConfigDict(extra="allow")

    provider: str = Field(min_length=1, description="Provider name")
    max_retries: int = Field(default=3, gt=0, description="HTTP attempts per request")


class GatewayConfig(BaseModel):
    """Upstream data sources"""
    price: ProviderConfig = Field(default_factory=lambda: ProviderConfig(provider="binance"))
    sentiment: ProviderConfig = Field(default_factory=lambda: ProviderConfig(provider="lunarcrush"))
    market: ProviderConfig = Field(default_factory=lambda: ProviderConfig(provider="coingecko"))

    @field_validator('price')
    @classmethod
    def validate_price_provider(cls, v: ProviderConfig) -> ProviderConfig:
        if v.provider not in ("binance", "coingecko", "static"):
            raise ValueError(f"price provider must be binance, coingecko or static, got {v.provider}")
        return v

    @field_validator('sentiment')
    @classmethod
    def validate_sentiment_provider(cls, v: ProviderConfig) -> ProviderConfig:
        if v.provider not in ("lunarcrush", "static"):
            raise ValueError(f"sentiment provider must be lunarcrush or static, got {v.provider}")
        return v

    @field_validator('market')
    @classmethod
    def validate_market_provider(cls, v: ProviderConfig) -> ProviderConfig:
        if v.provider != "coingecko":
            raise ValueError(f"market provider must be coingecko, got {v.provider}")
        return v


class ChannelSection(BaseModel):
    """One notification channel"""
    enabled: bool = Field(default=False, description="Send on this channel")
    transport: str = Field(default="log", pattern="^(log|webhook)$", description="Delivery mechanism")
    webhook_url: Optional[str] = Field(default=None, description="Relay endpoint")
    webhook_env: Optional[str] = Field(default=None, description="Env var holding the relay endpoint")
    recipient: str = Field(default="", description="Phone number or email address")
    sender: str = Field(default="", description="Sender number or address")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Delivery timeout")

    @model_validator(mode='after')
    def validate_webhook_target(self) -> 'ChannelSection':
        if self.enabled and self.transport == "webhook" and not (self.webhook_url or self.webhook_env):
            raise ValueError("webhook transport requires webhook_url or webhook_env")
        return self


class NotificationsConfig(BaseModel):
    """SMS and email channels, enabled independently"""
    sms: ChannelSection = Field(default_factory=ChannelSection)
    email: ChannelSection = Field(default_factory=ChannelSection)


class MonitoringConfig(BaseModel):
    """Prometheus exporter"""
    metrics_enabled: bool = Field(default=False, description="Expose metrics over HTTP")
    metrics_port: int = Field(default=9100, gt=0, lt=65536, description="Exporter port")


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Policy Schema =====
class HoldingConfig(BaseModel):
    """Initial holding"""
    symbol: str = Field(min_length=1, description="Ticker symbol")
    quantity: float = Field(ge=0, description="Units held")
    purchase_price: float = Field(gt=0, description="Cost basis per unit")
    stop_loss: Optional[float] = Field(default=None, ge=0, description="Liquidation price; derived when omitted")


class PortfolioConfig(BaseModel):
    """Starting portfolio"""
    cash: float = Field(default=0.0, ge=0, description="Uninvested USD")
    holdings: List[HoldingConfig] = Field(default_factory=list)

    @field_validator('holdings')
    @classmethod
    def validate_unique_symbols(cls, v: List[HoldingConfig]) -> List[HoldingConfig]:
        """Each symbol may appear only once"""
        seen = set()
        for holding in v:
            if holding.symbol in seen:
                raise ValueError(f"Duplicate holding symbol: {holding.symbol}")
            seen.add(holding.symbol)
        return v


class RiskConfig(BaseModel):
    """Risk management parameters"""
    max_allocation: float = Field(gt=0, le=1, description="Max fraction of portfolio value per holding")
    stop_loss_percentage: float = Field(default=0.0, ge=0, lt=1, description="Derives stop_loss from purchase_price")
    sentiment_gated_rebalance: bool = Field(default=True, description="Leave over-cap holdings with strong sentiment alone")


class SentimentConfig(BaseModel):
    """Sentiment thresholds"""
    positive_threshold: float = Field(ge=0, le=1, description="At or above: strong")
    negative_threshold: float = Field(ge=0, le=1, description="Below: liquidate")
    cache_ttl_seconds: float = Field(default=3600, gt=0, description="Sentiment cache TTL")

    @model_validator(mode='after')
    def validate_threshold_order(self) -> 'SentimentConfig':
        if self.negative_threshold >= self.positive_threshold:
            raise ValueError(
                f"negative_threshold ({self.negative_threshold}) must be below "
                f"positive_threshold ({self.positive_threshold})"
            )
        return self


class NotificationThresholdsConfig(BaseModel):
    """Change detector thresholds"""
    portfolio_value_change_percent: float = Field(ge=0, description="Portfolio value change %")
    holding_value_change_percent: float = Field(ge=0, description="Per-symbol price change %")
    sentiment_change: float = Field(ge=0, le=1, description="Absolute sentiment change")


class MarketScreenConfig(BaseModel):
    """Market screen ordering"""
    symbols: List[str] = Field(default_factory=list, description="Extra symbols beyond holdings")
    pinned: List[str] = Field(default_factory=list, description="Shown first, in this order")
    sort_by: str = Field(default="market_cap", pattern="^(market_cap|price_change_24h)$")


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    portfolio: PortfolioConfig
    risk: RiskConfig
    sentiment: SentimentConfig
    notification_thresholds: NotificationThresholdsConfig
    market: MarketScreenConfig = Field(default_factory=MarketScreenConfig)


@dataclass
class LoadedConfig:
    """Validated configuration handed to the runner"""
    app: AppSchema
    policy: PolicySchema
    config_dir: Path


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)

    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML as dict (empty dict for an empty file)

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, name: str, schema) -> Tuple[Optional[BaseModel], List[str]]:
    errors: List[str] = []
    model = None
    try:
        config = load_yaml_file(config_dir / name)
        if not isinstance(config, dict):
            raise ValueError("top level must be a mapping")
        model = schema(**config)
        logger.info(f"✅ {name} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{name}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{name}: {field}: {error['msg']}" if field else f"{name}: {error['msg']}")
    except ValueError as e:
        errors.append(f"{name}: {e}")
    return model, errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)[1]


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)[1]


def validate_sanity_checks(app: AppSchema, policy: PolicySchema) -> List[str]:
    """
    Logical consistency checks across app.yaml and policy.yaml.

    Detects:
    - static price provider missing a configured holding
    - pinned market symbols that are neither held nor listed
    - explicit stop-loss at or above the purchase price (logged only)
    """
    errors: List[str] = []
    symbols = [h.symbol for h in policy.portfolio.holdings]

    price_cfg = app.gateway.price.model_dump()
    if price_cfg.get("provider") == "static":
        prices = price_cfg.get("prices") or {}
        missing = [s for s in symbols if s not in prices]
        if missing:
            errors.append(f"app.yaml: gateway -> price -> prices: no static price for {', '.join(missing)}")

    known = set(symbols) | set(policy.market.symbols)
    for symbol in policy.market.pinned:
        if symbol not in known:
            errors.append(f"policy.yaml: market -> pinned: {symbol} is neither held nor listed in market.symbols")

    for holding in policy.portfolio.holdings:
        if holding.stop_loss is not None and holding.stop_loss >= holding.purchase_price:
            logger.warning(
                f"⚠️  {holding.symbol}: stop_loss {holding.stop_loss} is at or above purchase price "
                f"{holding.purchase_price}"
            )

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def _load(config_dir: str):
    config_path = Path(config_dir)
    app, app_errors = _validate_file(config_path, "app.yaml", AppSchema)
    policy, policy_errors = _validate_file(config_path, "policy.yaml", PolicySchema)
    all_errors = app_errors + policy_errors

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(app, policy))

    return app, policy, all_errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    _, _, all_errors = _load(config_dir)

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_config(config_dir: str = "config") -> LoadedConfig:
    """
    Load and validate app.yaml + policy.yaml.

    Raises:
        ConfigurationError: listing every problem found
    """
    app, policy, errors = _load(config_dir)
    if errors:
        raise ConfigurationError(f"{len(errors)} configuration error(s) in {config_dir}", errors)
    return LoadedConfig(app=app, policy=policy, config_dir=Path(config_dir))


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
