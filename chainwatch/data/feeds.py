"""
Metric feeds.

A feed turns a source id into fresh readings keyed by metric key. The alert
engine only depends on `MetricFeed.refresh`.
"""

import logging
import random
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import requests

from .snapshots import MetricReading, MetricSource, metric_key

logger = logging.getLogger(__name__)

# Starting prices for the simulated feed
DEFAULT_PRICES = {
    "ETH": 3000.0,
    "WETH": 3000.0,
    "WBTC": 60000.0,
    "USDC": 1.0,
    "USDT": 1.0,
    "DAI": 1.0,
    "MATIC": 0.8,
    "UNI": 7.2,
    "LINK": 17.5,
    "AAVE": 95.0,
}


class MetricFeed(ABC):
    """Supplies fresh readings for a source."""

    @abstractmethod
    def refresh(self, source_id: str) -> dict[str, MetricReading]:
        """
        Fetch current readings for a source.

        Args:
            source_id: Source identifier

        Returns:
            Mapping of metric key to reading
        """
        pass


class SimulatedMetricFeed(MetricFeed):
    """Random-walk readings for demo runs and local development."""

    def __init__(
        self,
        sources: list[MetricSource],
        volatility: float = 0.05,
        seed: Optional[int] = None,
    ):
        """
        Initialize simulated feed.

        Args:
            sources: Sources to simulate
            volatility: Maximum relative move per refresh (0.05 = 5%)
            seed: Random seed for reproducible runs
        """
        self.sources = {source.id: source for source in sources}
        self.volatility = volatility
        self._random = random.Random(seed)
        self._values: dict[tuple[str, str], float] = {}

    def refresh(self, source_id: str) -> dict[str, MetricReading]:
        source = self.sources.get(source_id)
        if source is None:
            raise ValueError(f"Unknown source: {source_id}")

        now = datetime.now()
        readings = {}

        if "price" in source.categories:
            for instrument in source.instruments:
                key = metric_key("price", instrument)
                start = DEFAULT_PRICES.get(instrument.upper(), 10.0)
                readings[key] = MetricReading(self._step(source_id, key, start), now)

        if "volume" in source.categories:
            key = metric_key("volume", "24h")
            readings[key] = MetricReading(self._step(source_id, key, 1_000_000_000.0), now)

        if "gas" in source.categories:
            key = metric_key("gas")
            readings[key] = MetricReading(max(1.0, self._step(source_id, key, 30.0)), now)

        return readings

    def _step(self, source_id: str, key: str, start: float) -> float:
        """Advance one metric by a random move within the volatility band."""
        current = self._values.get((source_id, key), start)
        move = self._random.uniform(-self.volatility, self.volatility)
        value = current * (1 + move)
        self._values[(source_id, key)] = value
        return value


class CoinMarketCapFeed(MetricFeed):
    """Fetches instrument quotes from the CoinMarketCap API."""

    API_URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/quotes/latest"

    def __init__(
        self,
        api_key: str,
        sources: list[MetricSource],
        convert: str = "USD",
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.api_key = api_key
        self.sources = {source.id: source for source in sources}
        self.convert = convert
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def refresh(self, source_id: str) -> dict[str, MetricReading]:
        """
        Fetch quotes for every instrument of a source.

        Raises:
            ValueError: If the source is unknown or quotes are unavailable
        """
        source = self.sources.get(source_id)
        if source is None:
            raise ValueError(f"Unknown source: {source_id}")
        if not source.instruments:
            return {}

        data = self._fetch_quotes(list(source.instruments))
        now = datetime.now()
        readings = {}
        total_volume = 0.0

        for instrument in source.instruments:
            quote = self._extract_quote(data, instrument)
            if quote is None:
                logger.warning(f"No quote for {instrument} on {source.name}")
                continue
            price = quote.get("price")
            if price is not None:
                readings[metric_key("price", instrument)] = MetricReading(price, now)
            total_volume += quote.get("volume_24h") or 0.0

        if "volume" in source.categories and total_volume:
            readings[metric_key("volume", "24h")] = MetricReading(total_volume, now)

        return readings

    def _fetch_quotes(self, symbols: list[str]) -> dict[str, Any]:
        """Request quotes with retries on network errors."""
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = requests.get(
                    self.API_URL,
                    params={"symbol": ",".join(symbols), "convert": self.convert},
                    headers={
                        "X-CMC_PRO_API_KEY": self.api_key,
                        "Accept": "application/json",
                    },
                    timeout=10,
                )
                response.raise_for_status()
                payload = response.json()
                return payload.get("data") or {}
            except (requests.RequestException, ValueError) as e:
                last_error = e
                logger.warning(
                    f"Quote request failed (attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay)

        raise ValueError(f"Quotes unavailable for {','.join(symbols)}: {last_error}")

    def _extract_quote(
        self, data: dict[str, Any], symbol: str
    ) -> Optional[dict[str, Any]]:
        entry = data.get(symbol) or data.get(symbol.upper())
        if isinstance(entry, list):
            entry = entry[0] if entry else None
        if not entry:
            return None
        return (entry.get("quote") or {}).get(self.convert)
