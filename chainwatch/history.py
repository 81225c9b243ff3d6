"""
Alert history: the bounded notification list and the price-alert trigger archive.
"""

import copy
import logging
import threading
from collections import deque
from typing import Optional, Union

from chainwatch.database.repository import MAX_NOTIFICATIONS, NotificationRepository
from chainwatch.rules.types import AlertEvent, EventKind, EventStatus, PriceAlertTrigger

logger = logging.getLogger(__name__)


class AlertHistory:
    """
    Time-ordered notification list, newest first.

    Holds at most `capacity` events; adding beyond that evicts the oldest.
    Reads return copies, so callers never see later mutations.
    """

    def __init__(
        self,
        capacity: int = MAX_NOTIFICATIONS,
        repository: Optional[NotificationRepository] = None,
    ):
        """
        Initialize history.

        Args:
            capacity: Maximum number of events kept
            repository: Optional persistence, loaded on start and written on change
        """
        if capacity <= 0:
            raise ValueError("History capacity must be positive")
        self.capacity = capacity
        self.repository = repository
        self._events: deque[AlertEvent] = deque(maxlen=capacity)
        self._lock = threading.RLock()

        if repository is not None:
            # Stored newest first; extend keeps that order
            self._events.extend(repository.load()[:capacity])

    def add(self, event: AlertEvent) -> AlertEvent:
        """Prepend an event, evicting the oldest beyond capacity."""
        with self._lock:
            self._events.appendleft(copy.deepcopy(event))
            self._persist()
        return copy.deepcopy(event)

    def get(self, event_id: str) -> Optional[AlertEvent]:
        with self._lock:
            for event in self._events:
                if event.id == event_id:
                    return copy.deepcopy(event)
        return None

    def list_events(
        self,
        status: Union[EventStatus, str] = "all",
        kind: Union[EventKind, str] = "all",
        limit: Optional[int] = None,
    ) -> list[AlertEvent]:
        """
        List events, newest first.

        Args:
            status: Status filter; "all" returns everything except dismissed
            kind: Kind filter or "all"
            limit: Maximum number of events

        Returns:
            Copies of the matching events
        """
        with self._lock:
            events = list(self._events)

        if status == "all":
            events = [e for e in events if e.status != EventStatus.DISMISSED]
        else:
            wanted = EventStatus(status)
            events = [e for e in events if e.status == wanted]

        if kind != "all":
            wanted_kind = EventKind(kind)
            events = [e for e in events if e.kind == wanted_kind]

        if limit:
            events = events[:limit]

        return copy.deepcopy(events)

    def snapshot(self) -> list[AlertEvent]:
        """Copy of every stored event regardless of status."""
        with self._lock:
            return copy.deepcopy(list(self._events))

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._events if e.status == EventStatus.UNREAD)

    def mark_read(self, event_id: str) -> bool:
        return self._set_status(event_id, EventStatus.READ)

    def dismiss(self, event_id: str) -> bool:
        return self._set_status(event_id, EventStatus.DISMISSED)

    def mark_all_read(self) -> int:
        """Mark every unread event read, returning how many changed."""
        with self._lock:
            changed = 0
            for event in self._events:
                if event.status == EventStatus.UNREAD:
                    event.status = EventStatus.READ
                    changed += 1
            if changed:
                self._persist()
            return changed

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._persist()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _set_status(self, event_id: str, status: EventStatus) -> bool:
        with self._lock:
            for event in self._events:
                if event.id == event_id:
                    event.status = status
                    self._persist()
                    return True
        return False

    def _persist(self) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(list(self._events))
        except Exception as e:
            logger.warning(f"Failed to persist notification history: {e}")


class TriggerArchive:
    """Unbounded record of price alert firings, for analytics."""

    def __init__(self):
        self._triggers: list[PriceAlertTrigger] = []
        self._lock = threading.Lock()

    def append(self, trigger: PriceAlertTrigger) -> None:
        with self._lock:
            self._triggers.append(trigger)

    def query(
        self,
        source_id: Optional[str] = None,
        instrument: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[PriceAlertTrigger]:
        """
        Query triggers, most recent first.

        Args:
            source_id: Only triggers of this source
            instrument: Only triggers of this instrument
            limit: Maximum number of triggers

        Returns:
            Copies of matching triggers
        """
        with self._lock:
            triggers = list(self._triggers)

        if source_id is not None:
            triggers = [t for t in triggers if t.source_id == source_id]
        if instrument is not None:
            triggers = [t for t in triggers if t.instrument == instrument]

        triggers.sort(key=lambda t: t.triggered_at, reverse=True)

        if limit and limit > 0:
            triggers = triggers[:limit]

        return copy.deepcopy(triggers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._triggers)
