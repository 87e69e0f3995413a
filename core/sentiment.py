"""
holdwatch Core: Sentiment Gateways

Sentiment sources behind one ``fetch_sentiment(symbol)`` capability.
Scores are normalized to [0, 1]; 0.5 means no data (neutral).
"""

import os
import re
from typing import Any, Dict, Optional
import logging

import requests

from core.exceptions import ProviderError
from core.exchange import request_json

logger = logging.getLogger(__name__)

NEUTRAL_SENTIMENT = 0.5

_CURRENT_VALUE = re.compile(r"\*\*Current Value\*\*:\s*(-?[\d.]+)\s*%")


def parse_current_value(text: str) -> Optional[float]:
    """Extract the ``**Current Value**: NN%`` line as a fraction, or None when absent."""
    match = _CURRENT_VALUE.search(text or "")
    if not match:
        return None
    return float(match.group(1)) / 100.0


def clamp_score(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def classify_sentiment(score: float, positive_threshold: float, negative_threshold: float) -> str:
    """Recommendation shown on the sentiment screen."""
    if score >= positive_threshold:
        return "Hold/Buy"
    if score <= negative_threshold:
        return "Sell"
    return "Monitor"


class LunarCrushSentimentGateway:
    """
    Topic sentiment from the LunarCrush text endpoint.

    Only the headline "Current Value" figure is read; the page is otherwise
    unstable and not parsed.
    """

    def __init__(self, base_url: str, api_key: str = "", max_retries: int = 3):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        logger.info(f"Initialized LunarCrushSentimentGateway ({self.base_url})")

    def fetch_sentiment(self, symbol: str) -> float:
        url = f"{self.base_url}/topic/{symbol.lower()}/sentiment"
        params = {"key": self.api_key} if self.api_key else None
        try:
            text = request_json("GET", url, params=params, max_retries=self.max_retries, as_text=True)
        except requests.exceptions.RequestException as e:
            raise ProviderError(symbol, "fetch_sentiment", f"sentiment request failed: {e}", e) from e

        try:
            value = parse_current_value(text)
        except ValueError as e:
            raise ProviderError(symbol, "fetch_sentiment", f"unparseable sentiment value: {e}", e) from e

        if value is None:
            logger.debug(f"{symbol}: no sentiment figure in response, using neutral")
            return NEUTRAL_SENTIMENT
        return clamp_score(value)


class StaticSentimentGateway:
    """Fixed scores from configuration; unknown symbols are neutral."""

    def __init__(self, scores: Optional[Dict[str, float]] = None, default: float = NEUTRAL_SENTIMENT):
        self.scores = {k: clamp_score(v) for k, v in (scores or {}).items()}
        self.default = clamp_score(default)

    def fetch_sentiment(self, symbol: str) -> float:
        return self.scores.get(symbol, self.default)


def create_sentiment_gateway(cfg: Optional[Dict[str, Any]]):
    """Build the sentiment gateway named by ``gateway.sentiment.provider``."""
    cfg = cfg or {}
    provider = str(cfg.get("provider", "lunarcrush")).lower()

    if provider == "lunarcrush":
        api_key = cfg.get("api_key") or ""
        if "${" in api_key:
            api_key = os.path.expandvars(api_key)
        if not api_key and cfg.get("api_key_env"):
            api_key = os.getenv(cfg["api_key_env"], "")
        return LunarCrushSentimentGateway(
            base_url=cfg.get("api_url") or "https://lunarcrush.ai",
            api_key=api_key,
            max_retries=int(cfg.get("max_retries", 3)),
        )
    if provider == "static":
        return StaticSentimentGateway(cfg.get("scores"), default=cfg.get("default", NEUTRAL_SENTIMENT))
    raise ValueError(f"Unsupported sentiment provider: {provider}")
