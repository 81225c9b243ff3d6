"""
Latest and previous metric readings per (source, metric).
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

TIMEFRAME_INSTRUMENTS = ("1h", "24h", "7d")


def metric_key(category: str, instrument: Optional[str] = None) -> str:
    """Build a metric key, e.g. metric_key("price", "ETH") -> "price:ETH"."""
    if instrument:
        return f"{category}:{instrument}"
    return category


def split_metric_key(key: str) -> tuple[str, Optional[str]]:
    """Split a metric key into (category, instrument)."""
    category, _, instrument = key.partition(":")
    return category, instrument or None


@dataclass(frozen=True)
class MetricSource:
    """An independent producer of metrics, e.g. one blockchain network."""

    id: str
    name: str
    categories: tuple[str, ...] = ("price", "volume", "gas")
    explorer_url: Optional[str] = None
    instruments: tuple[str, ...] = ()


@dataclass(frozen=True)
class MetricReading:
    """A single reading returned by a metric feed."""

    current: float
    timestamp: datetime


@dataclass(frozen=True)
class MetricSnapshot:
    """Current and previous value of one metric of one source."""

    source_id: str
    metric_key: str
    current: float
    previous: Optional[float]
    timestamp: datetime

    @property
    def category(self) -> str:
        return split_metric_key(self.metric_key)[0]

    @property
    def instrument(self) -> Optional[str]:
        return split_metric_key(self.metric_key)[1]

    @property
    def percent_change(self) -> Optional[float]:
        """Percent change from previous, None when it cannot be computed."""
        if self.previous is None or self.previous == 0:
            return None
        return (self.current - self.previous) / self.previous * 100


class MetricSnapshotStore:
    """
    Holds the latest snapshot per (source, metric).

    Snapshots are immutable, so values handed out are never affected by later
    updates.
    """

    def __init__(self):
        self._snapshots: dict[tuple[str, str], MetricSnapshot] = {}
        self._lock = threading.Lock()

    def get(self, source_id: str, key: str) -> Optional[MetricSnapshot]:
        """Get the snapshot for a metric, None if never observed."""
        with self._lock:
            return self._snapshots.get((source_id, key))

    def update(
        self,
        source_id: str,
        key: str,
        current: float,
        timestamp: Optional[datetime] = None,
    ) -> MetricSnapshot:
        """
        Record a new reading.

        The previous value only moves when the current value changes; the first
        reading of a metric has no previous value.

        Args:
            source_id: Source identifier
            key: Metric key
            current: New reading
            timestamp: Reading time, defaults to now

        Returns:
            The stored snapshot
        """
        timestamp = timestamp or datetime.now()
        with self._lock:
            existing = self._snapshots.get((source_id, key))
            if existing is None:
                previous = None
            elif existing.current != current:
                previous = existing.current
            else:
                previous = existing.previous

            snapshot = MetricSnapshot(
                source_id=source_id,
                metric_key=key,
                current=current,
                previous=previous,
                timestamp=timestamp,
            )
            self._snapshots[(source_id, key)] = snapshot
            return snapshot

    def update_many(
        self, source_id: str, readings: dict[str, MetricReading]
    ) -> list[MetricSnapshot]:
        """Apply a feed refresh for one source, skipping unusable readings."""
        updated = []
        for key, reading in readings.items():
            try:
                value = float(reading.current)
            except (TypeError, ValueError, AttributeError):
                logger.warning(f"Ignoring non-numeric reading {source_id}/{key}")
                continue
            if not math.isfinite(value):
                logger.warning(f"Ignoring non-finite reading {source_id}/{key}")
                continue
            updated.append(self.update(source_id, key, value, reading.timestamp))
        return updated

    def for_source(self, source_id: str) -> list[MetricSnapshot]:
        """All snapshots of one source, ordered by metric key."""
        with self._lock:
            snapshots = [
                s for (sid, _), s in self._snapshots.items() if sid == source_id
            ]
        return sorted(snapshots, key=lambda s: s.metric_key)

    def all(self) -> list[MetricSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()
