"""
Alert analytics: frequency, trend, source distribution, summary metrics and
anomaly detection over the notification history and trigger archive.

All views are computed from copies of the history and never modify it.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import pandas as pd

from chainwatch.data.snapshots import MetricSource
from chainwatch.history import AlertHistory, TriggerArchive
from chainwatch.rules.types import ConditionType, EventKind

logger = logging.getLogger(__name__)

# Window length and bucket width per timeframe
TIMEFRAMES: dict[str, tuple[timedelta, timedelta]] = {
    "24h": (timedelta(hours=24), timedelta(hours=1)),
    "7d": (timedelta(days=7), timedelta(days=1)),
    "30d": (timedelta(days=30), timedelta(days=1)),
    "90d": (timedelta(days=90), timedelta(days=7)),
}

COLUMNS = ["timestamp", "category", "source_id", "kind", "condition_type"]


def _window(timeframe: str) -> tuple[timedelta, timedelta]:
    try:
        return TIMEFRAMES[timeframe]
    except KeyError:
        raise ValueError(
            f"Unknown timeframe: {timeframe} (expected one of {', '.join(TIMEFRAMES)})"
        ) from None


def _percent_change(current: int, previous: int) -> float:
    if previous == 0:
        return 100.0
    return (current - previous) / previous * 100


class AnalyticsEngine:
    """Read-only aggregate views over alert history."""

    def __init__(
        self,
        history: AlertHistory,
        archive: TriggerArchive,
        sources: Optional[dict[str, MetricSource]] = None,
        anomaly_k: float = 2.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize analytics engine.

        Args:
            history: Notification history (rule events are read from here)
            archive: Price alert trigger archive
            sources: Configured sources by id, for display names
            anomaly_k: Standard deviations above the mean that make a spike
            clock: Time source for window boundaries
        """
        self.history = history
        self.archive = archive
        self.sources = sources or {}
        self.anomaly_k = anomaly_k
        self.clock = clock

    def records(self) -> pd.DataFrame:
        """
        One row per recorded alert.

        Rule events come from the notification history; price alert firings
        come from the archive, which outlives the bounded history, plus any
        price alert events in history that the archive does not hold. System
        notices are not alerts and are left out.
        """
        rows = []
        archived = set()

        for trigger in self.archive.query():
            archived.add((trigger.alert_id, trigger.triggered_at))
            rows.append({
                "timestamp": trigger.triggered_at,
                "category": "price",
                "source_id": trigger.source_id,
                "kind": EventKind.PRICE_ALERT.value,
                "condition_type": trigger.condition_type.value,
            })

        for event in self.history.snapshot():
            if event.kind == EventKind.SYSTEM:
                continue
            if event.kind == EventKind.PRICE_ALERT:
                # Price alerts recorded before this session are only in history
                key = (event.metadata.get("alert_id"), event.timestamp)
                if key in archived:
                    continue
                rows.append({
                    "timestamp": event.timestamp,
                    "category": "price",
                    "source_id": event.source_id,
                    "kind": event.kind.value,
                    "condition_type": event.metadata.get("condition_type"),
                })
                continue
            rows.append({
                "timestamp": event.timestamp,
                "category": event.category or "unknown",
                "source_id": event.source_id,
                "kind": event.kind.value,
                "condition_type": None,
            })

        df = pd.DataFrame(rows, columns=COLUMNS)
        df["timestamp"] = pd.to_datetime(df["timestamp"])
        return df

    def _in_window(
        self, df: pd.DataFrame, start: datetime, end: datetime, inclusive_end: bool = True
    ) -> pd.DataFrame:
        if inclusive_end:
            mask = (df["timestamp"] >= start) & (df["timestamp"] <= end)
        else:
            mask = (df["timestamp"] >= start) & (df["timestamp"] < end)
        return df[mask]

    def frequency(self, timeframe: str = "7d", now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Alert count per category within the window.

        Returns:
            {"total": int, "categories": [{"category", "count", "percentage"}]}
            sorted by count, highest first
        """
        length, _ = _window(timeframe)
        now = now or self.clock()
        df = self._in_window(self.records(), now - length, now)

        total = len(df)
        if total == 0:
            return {"total": 0, "categories": []}

        counts = df.groupby("category").size().sort_values(ascending=False, kind="stable")
        categories = [
            {
                "category": category,
                "count": int(count),
                "percentage": count / total * 100,
            }
            for category, count in counts.items()
        ]
        return {"total": total, "categories": categories}

    def trend(self, timeframe: str = "7d", now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """
        Alert counts in fixed-width buckets across the window.

        Buckets are hourly for 24h, daily for 7d and 30d, weekly for 90d; the
        last bucket may be shorter when the window is not a whole number of
        buckets.

        Returns:
            Oldest bucket first: {"start", "label", "count", "categories"}
        """
        length, interval = _window(timeframe)
        now = now or self.clock()
        start = now - length
        n_buckets = math.ceil(length / interval)

        df = self._in_window(self.records(), start, now)
        if df.empty:
            table = pd.DataFrame(index=range(n_buckets))
        else:
            df = df.assign(
                bucket=((df["timestamp"] - start) // pd.Timedelta(interval)).clip(
                    upper=n_buckets - 1
                )
            )
            table = (
                df.groupby(["bucket", "category"])
                .size()
                .unstack(fill_value=0)
                .reindex(range(n_buckets), fill_value=0)
            )

        hourly = interval < timedelta(days=1)
        series = []
        for bucket in range(n_buckets):
            bucket_start = start + bucket * interval
            row = table.loc[bucket] if len(table.columns) else pd.Series(dtype=int)
            categories = {str(category): int(count) for category, count in row.items()}
            series.append({
                "start": bucket_start,
                "label": bucket_start.strftime("%H:%M" if hourly else "%m/%d"),
                "count": sum(categories.values()),
                "categories": categories,
            })
        return series

    def source_distribution(
        self, timeframe: Optional[str] = None, now: Optional[datetime] = None
    ) -> list[dict[str, Any]]:
        """
        Alert count per source, highest first.

        Args:
            timeframe: Restrict to this window; None covers all recorded alerts
            now: End of the window

        Returns:
            [{"source_id", "name", "count", "percentage"}]
        """
        df = self.records()
        if timeframe is not None:
            length, _ = _window(timeframe)
            now = now or self.clock()
            df = self._in_window(df, now - length, now)

        df = df[df["source_id"].notna()]
        total = len(df)
        if total == 0:
            return []

        counts = df.groupby("source_id").size().sort_values(ascending=False, kind="stable")
        return [
            {
                "source_id": source_id,
                "name": self._source_name(source_id),
                "count": int(count),
                "percentage": count / total * 100,
            }
            for source_id, count in counts.items()
        ]

    def summary_metrics(
        self, timeframe: str = "7d", now: Optional[datetime] = None
    ) -> list[dict[str, Any]]:
        """
        Headline counts for the window, each with the percent change against
        the preceding window of equal length (100 when that window is empty).
        """
        length, _ = _window(timeframe)
        now = now or self.clock()
        records = self.records()
        current = self._in_window(records, now - length, now)
        previous = self._in_window(records, now - 2 * length, now - length, inclusive_end=False)

        def price(df: pd.DataFrame) -> pd.DataFrame:
            return df[df["kind"] == EventKind.PRICE_ALERT.value]

        def volume(df: pd.DataFrame) -> pd.DataFrame:
            return df[(df["kind"] == EventKind.RULE.value) & (df["category"] == "volume")]

        def volatility(df: pd.DataFrame) -> pd.DataFrame:
            return df[df["condition_type"] == ConditionType.VOLATILITY_SPIKE.value]

        metrics = []
        for metric_id, label, select in (
            ("total-alerts", "Total Alerts", lambda df: df),
            ("price-alerts", "Price Alerts", price),
            ("volume-alerts", "Volume Alerts", volume),
            ("volatility-alerts", "Volatility Alerts", volatility),
        ):
            value = len(select(current))
            change = _percent_change(value, len(select(previous)))
            metrics.append({
                "id": metric_id,
                "label": label,
                "value": value,
                "change": change,
                "is_positive": change >= 0,
            })
        return metrics

    def detect_anomalies(
        self,
        timeframe: str = "7d",
        now: Optional[datetime] = None,
        k: Optional[float] = None,
        recent_buckets: int = 1,
    ) -> dict[str, Any]:
        """
        Flag unusual alert activity.

        The most recent `recent_buckets` trend buckets are compared against
        the mean and population standard deviation of the earlier buckets; a
        bucket is a spike when its count exceeds mean + k * std. Severity
        scales with how many standard deviations above the mean the highest
        spike sits. Category imbalance and source concentration are flagged
        from the window's distributions.

        Args:
            timeframe: Analysis window
            now: End of the window
            k: Spike threshold in standard deviations, defaults to anomaly_k
            recent_buckets: Number of trailing buckets under test

        Returns:
            {"anomalies": [{"type", "description", "severity", "details"}],
             "has_anomalies": bool}
        """
        k = self.anomaly_k if k is None else k
        now = now or self.clock()
        anomalies = []

        spike = self._frequency_spike(self.trend(timeframe, now), k, recent_buckets)
        if spike:
            anomalies.append(spike)

        frequency = self.frequency(timeframe, now)
        categories = frequency["categories"]
        if len(categories) > 1 and categories[0]["percentage"] > 75:
            top = categories[0]
            anomalies.append({
                "type": "category_imbalance",
                "description": (
                    f'Unusual dominance of "{top["category"]}" alerts '
                    f'({top["percentage"]:.1f}%)'
                ),
                "severity": "high" if top["percentage"] > 90 else "medium",
                "details": (
                    f'{top["count"]} out of {frequency["total"]} alerts are in this category'
                ),
            })

        distribution = self.source_distribution(timeframe, now)
        if len(distribution) > 1 and distribution[0]["percentage"] > 80:
            top = distribution[0]
            total = sum(d["count"] for d in distribution)
            anomalies.append({
                "type": "source_concentration",
                "description": (
                    f'Unusual concentration of alerts on {top["name"]} '
                    f'({top["percentage"]:.1f}%)'
                ),
                "severity": "high" if top["percentage"] > 95 else "medium",
                "details": f'{top["count"]} out of {total} alerts are on this source',
            })

        if anomalies:
            logger.info(f"Detected {len(anomalies)} alert anomalies ({timeframe})")

        return {"anomalies": anomalies, "has_anomalies": bool(anomalies)}

    def _frequency_spike(
        self, trend: list[dict[str, Any]], k: float, recent_buckets: int
    ) -> Optional[dict[str, Any]]:
        counts = pd.Series([bucket["count"] for bucket in trend], dtype=float)
        if recent_buckets < 1 or len(counts) < recent_buckets + 2:
            return None

        baseline = counts.iloc[:-recent_buckets]
        recent = counts.iloc[-recent_buckets:]
        mean = baseline.mean()
        std = baseline.std(ddof=0)

        spikes = recent[recent > mean + k * std]
        if spikes.empty:
            return None

        highest = spikes.max()
        if std > 0:
            deviations = (highest - mean) / std
            if deviations >= 2 * k:
                severity = "high"
            elif deviations >= 1.5 * k:
                severity = "medium"
            else:
                severity = "low"
        else:
            deviations = math.inf
            severity = "high"

        return {
            "type": "frequency_spike",
            "description": (
                f"Unusual spike in alert frequency detected in {len(spikes)} period(s)"
            ),
            "severity": severity,
            "details": (
                f"Highest count: {int(highest)} alerts "
                f"(avg: {mean:.1f}, std: {std:.1f}, "
                f"{'n/a' if math.isinf(deviations) else f'{deviations:.1f}'} std above mean)"
            ),
        }

    def _source_name(self, source_id: str) -> str:
        source = self.sources.get(source_id)
        return source.name if source else str(source_id)
