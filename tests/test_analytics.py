"""
Alert analytics tests.
"""

from datetime import datetime, timedelta

import pytest

from chainwatch.analytics.engine import AnalyticsEngine
from chainwatch.history import AlertHistory, TriggerArchive
from chainwatch.rules.types import ConditionType, EventKind, PriceAlertTrigger

NOW = datetime(2024, 3, 15, 12, 0)


@pytest.fixture
def history():
    return AlertHistory()


@pytest.fixture
def archive():
    return TriggerArchive()


@pytest.fixture
def engine(history, archive, sources):
    return AnalyticsEngine(history, archive, sources=sources, clock=lambda: NOW)


def _trigger(when: datetime, condition_type=ConditionType.ABOVE, alert_id="a1", source_id="1"):
    return PriceAlertTrigger(
        alert_id=alert_id,
        source_id=source_id,
        instrument="ETH",
        condition_type=condition_type,
        trigger_value=3705.0,
        previous_value=3650.0,
        triggered_at=when,
        message="ETH price is now above $3,700.00 at $3,705.00",
    )


def _fill_daily(history, make_event, counts, category="volume"):
    """Add counts[i] events on day i of the 7d window ending at NOW."""
    start = NOW - timedelta(days=7)
    for day, count in enumerate(counts):
        for n in range(count):
            history.add(
                make_event(
                    category=category,
                    timestamp=start + timedelta(days=day, hours=1, minutes=n),
                )
            )


class TestFrequency:
    """Test per-category counts."""

    def test_percentages_sum_to_100(self, engine, history, make_event):
        """Should split the total across categories."""
        for _ in range(3):
            history.add(make_event(category="volume", timestamp=NOW - timedelta(hours=2)))
        history.add(make_event(category="gas", timestamp=NOW - timedelta(hours=3)))

        result = engine.frequency("7d")

        assert result["total"] == 4
        assert [c["category"] for c in result["categories"]] == ["volume", "gas"]
        assert sum(c["percentage"] for c in result["categories"]) == pytest.approx(100)
        assert result["categories"][0]["percentage"] == pytest.approx(75)

    def test_window_excludes_old_alerts(self, engine, history, make_event):
        """Should only count alerts inside the window."""
        history.add(make_event(timestamp=NOW - timedelta(days=8)))
        history.add(make_event(timestamp=NOW - timedelta(days=1)))

        assert engine.frequency("7d")["total"] == 1
        assert engine.frequency("30d")["total"] == 2

    def test_empty(self, engine):
        """Should report nothing for an empty history."""
        assert engine.frequency("24h") == {"total": 0, "categories": []}

    def test_system_events_excluded(self, engine, history, make_event):
        """Should not count system notices as alerts."""
        history.add(make_event(kind=EventKind.SYSTEM, category="system", timestamp=NOW))
        assert engine.frequency("24h")["total"] == 0

    def test_unknown_timeframe(self, engine):
        """Should reject unknown windows."""
        with pytest.raises(ValueError):
            engine.frequency("1y")


class TestRecords:
    """Test combining history and archive."""

    def test_archive_and_history_not_double_counted(self, engine, history, archive, make_event):
        """Should count a price alert present in both sources once."""
        when = NOW - timedelta(hours=1)
        archive.append(_trigger(when))
        history.add(
            make_event(
                kind=EventKind.PRICE_ALERT,
                category="price",
                timestamp=when,
                metadata={"alert_id": "a1", "condition_type": "above"},
            )
        )

        records = engine.records()
        assert len(records) == 1
        assert records.iloc[0]["category"] == "price"

    def test_history_only_price_alerts_counted(self, engine, history, make_event):
        """Should use history for price alerts missing from the archive."""
        history.add(
            make_event(
                kind=EventKind.PRICE_ALERT,
                category="price",
                timestamp=NOW - timedelta(hours=1),
                metadata={"alert_id": "old", "condition_type": "volatility_spike"},
            )
        )

        assert len(engine.records()) == 1


class TestTrend:
    """Test bucketed counts."""

    def test_hourly_buckets(self, engine, history, make_event):
        """Should produce 24 hourly buckets for 24h."""
        history.add(make_event(timestamp=NOW - timedelta(minutes=30)))
        history.add(make_event(category="gas", timestamp=NOW - timedelta(minutes=20)))
        history.add(make_event(timestamp=NOW - timedelta(hours=23, minutes=30)))

        trend = engine.trend("24h")

        assert len(trend) == 24
        assert trend[0]["label"] == "12:00"
        assert trend[0]["count"] == 1
        assert trend[-1]["count"] == 2
        assert trend[-1]["categories"] == {"gas": 1, "volume": 1}
        assert sum(b["count"] for b in trend) == 3

    def test_daily_and_weekly_buckets(self, engine):
        """Should use daily buckets for 7d and 30d and weekly for 90d."""
        assert len(engine.trend("7d")) == 7
        assert len(engine.trend("30d")) == 30
        assert len(engine.trend("90d")) == 13
        assert engine.trend("7d")[0]["label"] == "03/08"

    def test_alert_at_window_end_in_last_bucket(self, engine, history, make_event):
        """Should place an alert stamped exactly now in the last bucket."""
        history.add(make_event(timestamp=NOW))
        assert engine.trend("7d")[-1]["count"] == 1


class TestSourceDistribution:
    """Test per-source counts."""

    def test_named_and_sorted(self, engine, history, archive, make_event):
        """Should name sources and sort by count."""
        archive.append(_trigger(NOW - timedelta(hours=1), source_id="137"))
        history.add(make_event(source_id="137", timestamp=NOW - timedelta(hours=2)))
        history.add(make_event(source_id="1", timestamp=NOW - timedelta(hours=3)))

        distribution = engine.source_distribution()

        assert [d["name"] for d in distribution] == ["Polygon", "Ethereum"]
        assert distribution[0]["count"] == 2
        assert sum(d["percentage"] for d in distribution) == pytest.approx(100)


class TestSummaryMetrics:
    """Test headline counts."""

    def test_counts_and_change(self, engine, history, archive, make_event):
        """Should compare against the preceding window."""
        for hours in (1, 2, 3):
            history.add(make_event(category="volume", timestamp=NOW - timedelta(hours=hours)))
        for days in (8, 9):
            history.add(make_event(category="volume", timestamp=NOW - timedelta(days=days)))
        archive.append(_trigger(NOW - timedelta(hours=4), ConditionType.VOLATILITY_SPIKE))

        metrics = {m["id"]: m for m in engine.summary_metrics("7d")}

        assert metrics["total-alerts"]["value"] == 4
        assert metrics["total-alerts"]["change"] == pytest.approx(100)
        assert metrics["volume-alerts"]["value"] == 3
        assert metrics["volume-alerts"]["change"] == pytest.approx(50)
        assert metrics["price-alerts"]["value"] == 1
        assert metrics["volatility-alerts"]["value"] == 1
        assert metrics["volatility-alerts"]["change"] == 100
        assert all(m["is_positive"] for m in metrics.values())

    def test_decrease_is_negative(self, engine, history, make_event):
        """Should flag a drop as not positive."""
        history.add(make_event(timestamp=NOW - timedelta(hours=1)))
        for days in (8, 9):
            history.add(make_event(timestamp=NOW - timedelta(days=days)))

        total = engine.summary_metrics("7d")[0]
        assert total["change"] == pytest.approx(-50)
        assert total["is_positive"] is False


class TestAnomalies:
    """Test anomaly detection."""

    def test_spike_flagged(self, engine, history, make_event):
        """Should flag a bucket three deviations above the mean."""
        _fill_daily(history, make_event, [0, 4, 0, 4, 0, 4, 8])

        result = engine.detect_anomalies("7d", k=2)

        spikes = [a for a in result["anomalies"] if a["type"] == "frequency_spike"]
        assert result["has_anomalies"] is True
        assert len(spikes) == 1
        assert spikes[0]["severity"] == "medium"

    def test_small_rise_not_flagged(self, engine, history, make_event):
        """Should ignore a bucket half a deviation above the mean."""
        _fill_daily(history, make_event, [0, 4, 0, 4, 0, 4, 3])

        result = engine.detect_anomalies("7d", k=2)

        assert "frequency_spike" not in [a["type"] for a in result["anomalies"]]

    def test_category_imbalance(self, engine, history, make_event):
        """Should flag a dominant category."""
        for _ in range(9):
            history.add(make_event(category="volume", timestamp=NOW - timedelta(hours=1)))
        history.add(make_event(category="gas", timestamp=NOW - timedelta(hours=1)))

        result = engine.detect_anomalies("7d")

        imbalance = [a for a in result["anomalies"] if a["type"] == "category_imbalance"]
        assert len(imbalance) == 1
        assert imbalance[0]["severity"] == "medium"

    def test_source_concentration(self, engine, history, make_event):
        """Should flag alerts concentrated on one source."""
        for _ in range(19):
            history.add(make_event(source_id="1", timestamp=NOW - timedelta(hours=1)))
        history.add(make_event(source_id="137", timestamp=NOW - timedelta(hours=1)))

        result = engine.detect_anomalies("7d")

        concentration = [
            a for a in result["anomalies"] if a["type"] == "source_concentration"
        ]
        assert len(concentration) == 1
        assert concentration[0]["severity"] == "medium"
        assert "Ethereum" in concentration[0]["description"]

    def test_empty_history_has_no_anomalies(self, engine):
        """Should report nothing without alerts."""
        assert engine.detect_anomalies("7d") == {"anomalies": [], "has_anomalies": False}
