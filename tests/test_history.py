"""
Notification history and trigger archive tests.
"""

from datetime import datetime, timedelta

import pytest

from chainwatch.database.repository import NotificationRepository
from chainwatch.history import AlertHistory, TriggerArchive
from chainwatch.rules.types import ConditionType, EventKind, EventStatus, PriceAlertTrigger


def _trigger(alert_id: str, source_id: str, instrument: str, minutes: int) -> PriceAlertTrigger:
    return PriceAlertTrigger(
        alert_id=alert_id,
        source_id=source_id,
        instrument=instrument,
        condition_type=ConditionType.ABOVE,
        trigger_value=1.0,
        previous_value=0.5,
        triggered_at=datetime(2024, 3, 15, 12, 0) + timedelta(minutes=minutes),
        message="triggered",
    )


class TestAlertHistory:
    """Test the bounded notification list."""

    def test_newest_first(self, make_event):
        """Should list the most recent event first."""
        history = AlertHistory()
        first = history.add(make_event(title="first"))
        second = history.add(make_event(title="second"))

        events = history.list_events()
        assert [e.id for e in events] == [second.id, first.id]

    def test_capacity_evicts_oldest(self, make_event):
        """Should never exceed capacity; the 51st insert evicts the oldest."""
        history = AlertHistory(capacity=50)
        added = [history.add(make_event(title=f"event {i}")) for i in range(51)]

        assert len(history) == 50
        ids = [e.id for e in history.snapshot()]
        assert added[0].id not in ids
        assert ids[0] == added[-1].id
        assert ids[-1] == added[1].id

    def test_invalid_capacity(self):
        """Should reject a non-positive capacity."""
        with pytest.raises(ValueError):
            AlertHistory(capacity=0)

    def test_reads_are_copies(self, make_event):
        """Should not expose stored events to mutation."""
        history = AlertHistory()
        event = history.add(make_event())

        listed = history.list_events()[0]
        listed.status = EventStatus.DISMISSED
        listed.metadata["x"] = 1

        stored = history.get(event.id)
        assert stored.status == EventStatus.UNREAD
        assert "x" not in stored.metadata

    def test_add_stores_a_copy(self, make_event):
        """Should not track later changes to the added or returned event."""
        history = AlertHistory()
        original = make_event()
        returned = history.add(original)

        original.status = EventStatus.DISMISSED
        returned.title = "changed"

        stored = history.get(original.id)
        assert stored.status == EventStatus.UNREAD
        assert stored.title != "changed"
        assert history.unread_count() == 1

    def test_mark_read_and_unread_count(self, make_event):
        """Should track unread events."""
        history = AlertHistory()
        a = history.add(make_event())
        history.add(make_event())
        assert history.unread_count() == 2

        assert history.mark_read(a.id) is True
        assert history.unread_count() == 1
        assert history.mark_read("missing") is False

    def test_mark_all_read(self, make_event):
        """Should mark every unread event read."""
        history = AlertHistory()
        for _ in range(3):
            history.add(make_event())

        assert history.mark_all_read() == 3
        assert history.unread_count() == 0

    def test_dismissed_hidden_from_all(self, make_event):
        """Should exclude dismissed events from the default listing."""
        history = AlertHistory()
        a = history.add(make_event())
        b = history.add(make_event())
        history.dismiss(a.id)

        assert [e.id for e in history.list_events()] == [b.id]
        assert [e.id for e in history.list_events(status="dismissed")] == [a.id]

    def test_filter_by_kind_and_limit(self, make_event):
        """Should filter by kind and cap the result."""
        history = AlertHistory()
        history.add(make_event(kind=EventKind.RULE))
        for _ in range(3):
            history.add(make_event(kind=EventKind.PRICE_ALERT, category="price"))

        assert len(history.list_events(kind="price-alert")) == 3
        assert len(history.list_events(kind=EventKind.RULE)) == 1
        assert len(history.list_events(limit=2)) == 2

    def test_clear(self, make_event):
        """Should remove everything."""
        history = AlertHistory()
        history.add(make_event())
        history.clear()
        assert len(history) == 0

    def test_write_through_persistence(self, db, make_event):
        """Should reload persisted events in the same order."""
        repo = NotificationRepository(db)
        history = AlertHistory(repository=repo)
        first = history.add(make_event(title="first"))
        second = history.add(make_event(title="second"))
        history.mark_read(first.id)

        reloaded = AlertHistory(repository=NotificationRepository(db))
        events = reloaded.snapshot()
        assert [e.id for e in events] == [second.id, first.id]
        assert events[1].status == EventStatus.READ


class TestTriggerArchive:
    """Test the unbounded trigger archive."""

    def test_unbounded(self):
        """Should keep every trigger."""
        archive = TriggerArchive()
        for i in range(120):
            archive.append(_trigger("a", "1", "ETH", i))
        assert len(archive) == 120

    def test_query_sorted_descending(self):
        """Should return newest first."""
        archive = TriggerArchive()
        archive.append(_trigger("a", "1", "ETH", 5))
        archive.append(_trigger("b", "1", "ETH", 10))
        archive.append(_trigger("c", "1", "ETH", 1))

        assert [t.alert_id for t in archive.query()] == ["b", "a", "c"]

    def test_query_filters_and_limit(self):
        """Should filter by source and instrument and apply the limit."""
        archive = TriggerArchive()
        archive.append(_trigger("a", "1", "ETH", 1))
        archive.append(_trigger("b", "137", "MATIC", 2))
        archive.append(_trigger("c", "1", "USDC", 3))
        archive.append(_trigger("d", "1", "ETH", 4))

        assert [t.alert_id for t in archive.query(source_id="1")] == ["d", "c", "a"]
        assert [t.alert_id for t in archive.query(instrument="ETH")] == ["d", "a"]
        assert [t.alert_id for t in archive.query(source_id="1", limit=1)] == ["d"]
