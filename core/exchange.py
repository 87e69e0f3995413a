"""
holdwatch Core: Price Gateways

Spot price sources behind one ``fetch_price(symbol)`` capability.
The provider is chosen once at startup from app.yaml (``gateway.price``).

Every failure is raised as ProviderError carrying the symbol and a
human-readable cause; callers decide whether to skip the symbol.
"""

import os
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import requests

from core.exceptions import ProviderError

logger = logging.getLogger(__name__)

BINANCE_BASE = "https://api.binance.com"
COINGECKO_BASE = "https://api.coingecko.com/api/v3"


def request_json(
    method: str,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0,
    max_retries: int = 3,
    as_text: bool = False,
):
    """
    HTTP call with exponential backoff.

    Retries on 429, 5xx and network errors. Other 4xx responses are raised
    immediately.
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            response = requests.request(method, url, params=params, headers=headers, timeout=timeout)
            response.raise_for_status()
            return response.text if as_text else response.json()

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 0
            if 400 <= status_code < 500 and status_code != 429:
                raise
            logger.warning(f"HTTP {status_code} from {url}, attempt {attempt + 1}/{max_retries}")
            last_exception = e

        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Network error on {url}: {e}, attempt {attempt + 1}/{max_retries}")
            last_exception = e

        if attempt < max_retries - 1:
            backoff = (2 ** attempt) + random.uniform(0, 1)
            logger.debug(f"Retrying in {backoff:.1f}s...")
            time.sleep(backoff)

    logger.error(f"All {max_retries} retries exhausted for {url}")
    if last_exception:
        raise last_exception
    raise requests.exceptions.RequestException(f"Request to {url} failed after {max_retries} attempts")


@dataclass
class MarketRow:
    """One line of the market screen."""
    symbol: str
    price: float
    market_cap: float
    price_change_24h: float


class BinancePriceGateway:
    """Spot ticker prices from Binance (``/api/v3/ticker/price``)."""

    def __init__(
        self,
        base_url: str = BINANCE_BASE,
        api_key: str = "",
        symbol_map: Optional[Dict[str, str]] = None,
        quote_asset: str = "USDT",
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.symbol_map = dict(symbol_map or {})
        self.quote_asset = quote_asset
        self.max_retries = max_retries
        logger.info(f"Initialized BinancePriceGateway ({self.base_url}, {len(self.symbol_map)} mapped symbols)")

    def exchange_symbol(self, symbol: str) -> str:
        return self.symbol_map.get(symbol) or f"{symbol.upper()}{self.quote_asset}"

    def fetch_price(self, symbol: str) -> float:
        pair = self.exchange_symbol(symbol)
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else None
        try:
            data = request_json(
                "GET",
                f"{self.base_url}/api/v3/ticker/price",
                params={"symbol": pair},
                headers=headers,
                max_retries=self.max_retries,
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(symbol, "fetch_price", f"Binance request for {pair} failed: {e}", e) from e
        except ValueError as e:
            raise ProviderError(symbol, "fetch_price", f"Binance returned invalid JSON for {pair}: {e}", e) from e

        try:
            price = float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(symbol, "fetch_price", f"Unexpected Binance payload for {pair}: {data!r}", e) from e

        if price <= 0:
            raise ProviderError(symbol, "fetch_price", f"Non-positive price {price} for {pair}")
        return price


class CoinGeckoPriceGateway:
    """USD prices and market rows from CoinGecko."""

    def __init__(
        self,
        base_url: str = COINGECKO_BASE,
        api_key: str = "",
        coin_ids: Optional[Dict[str, str]] = None,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.coin_ids = dict(coin_ids or {})
        self.max_retries = max_retries
        logger.info(f"Initialized CoinGeckoPriceGateway ({self.base_url})")

    def coin_id(self, symbol: str) -> str:
        return self.coin_ids.get(symbol) or symbol.lower()

    def _headers(self) -> Optional[Dict[str, str]]:
        return {"x-cg-demo-api-key": self.api_key} if self.api_key else None

    def fetch_price(self, symbol: str) -> float:
        coin = self.coin_id(symbol)
        try:
            data = request_json(
                "GET",
                f"{self.base_url}/simple/price",
                params={"ids": coin, "vs_currencies": "usd"},
                headers=self._headers(),
                max_retries=self.max_retries,
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(symbol, "fetch_price", f"CoinGecko request for {coin} failed: {e}", e) from e
        except ValueError as e:
            raise ProviderError(symbol, "fetch_price", f"CoinGecko returned invalid JSON for {coin}: {e}", e) from e

        try:
            price = float(data[coin]["usd"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(symbol, "fetch_price", f"{coin} not supported by CoinGecko", e) from e

        if price <= 0:
            raise ProviderError(symbol, "fetch_price", f"Non-positive price {price} for {coin}")
        return price

    def fetch_market_data(self, symbols: List[str]) -> List[MarketRow]:
        """Price, market cap and 24h change for each symbol CoinGecko knows."""
        if not symbols:
            return []
        ids = {self.coin_id(s): s for s in symbols}
        try:
            data = request_json(
                "GET",
                f"{self.base_url}/coins/markets",
                params={"vs_currency": "usd", "ids": ",".join(ids)},
                headers=self._headers(),
                max_retries=self.max_retries,
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(",".join(symbols), "fetch_market_data", str(e), e) from e

        if data is not None and not isinstance(data, list):
            raise ProviderError(",".join(symbols), "fetch_market_data", f"Unexpected payload: {data!r:.200}")

        rows = []
        try:
            for item in data or []:
                symbol = ids.get(item.get("id"), str(item.get("symbol", "")).upper())
                rows.append(
                    MarketRow(
                        symbol=symbol,
                        price=float(item.get("current_price") or 0.0),
                        market_cap=float(item.get("market_cap") or 0.0),
                        price_change_24h=float(item.get("price_change_percentage_24h") or 0.0),
                    )
                )
        except (AttributeError, TypeError, ValueError) as e:
            raise ProviderError(",".join(symbols), "fetch_market_data", f"Malformed market row: {e}", e) from e
        return rows


class StaticPriceGateway:
    """Fixed prices from configuration (dry runs and tests)."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = {k: float(v) for k, v in (prices or {}).items()}

    def fetch_price(self, symbol: str) -> float:
        if symbol not in self.prices:
            raise ProviderError(symbol, "fetch_price", "no static price configured")
        return self.prices[symbol]


def _expand(value: Optional[str]) -> str:
    if value and "${" in value:
        return os.path.expandvars(value)
    return value or ""


def create_price_gateway(cfg: Optional[Dict[str, Any]]):
    """
    Build the price gateway named by ``gateway.price.provider``.

    Raises:
        ValueError: unknown provider name
    """
    cfg = cfg or {}
    provider = str(cfg.get("provider", "binance")).lower()
    api_key = _expand(cfg.get("api_key")) or os.getenv(cfg.get("api_key_env", ""), "")
    max_retries = int(cfg.get("max_retries", 3))

    if provider == "binance":
        return BinancePriceGateway(
            base_url=cfg.get("base_url") or BINANCE_BASE,
            api_key=api_key,
            symbol_map=cfg.get("symbol_map"),
            quote_asset=cfg.get("quote_asset", "USDT"),
            max_retries=max_retries,
        )
    if provider == "coingecko":
        return CoinGeckoPriceGateway(
            base_url=cfg.get("base_url") or COINGECKO_BASE,
            api_key=api_key,
            coin_ids=cfg.get("symbol_map"),
            max_retries=max_retries,
        )
    if provider == "static":
        return StaticPriceGateway(cfg.get("prices"))
    raise ValueError(f"Unsupported price provider: {provider}")
