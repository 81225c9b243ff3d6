"""
Recently used sources tracker.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from chainwatch.database.models import RecentSource
from chainwatch.database.repository import MAX_RECENT_SOURCES, RecentSourceRepository

logger = logging.getLogger(__name__)


class RecentSourceTracker:
    """Keeps the most recently selected sources, most recent first."""

    def __init__(
        self,
        repository: Optional[RecentSourceRepository] = None,
        max_items: int = MAX_RECENT_SOURCES,
    ):
        self.repository = repository
        self.max_items = max_items
        self._lock = threading.Lock()
        self._items: list[RecentSource] = []
        if repository is not None:
            self._items = repository.load()[:max_items]

    def touch(self, source_id: str, when: Optional[datetime] = None) -> RecentSource:
        """
        Record a use of a source.

        Moves the source to the front and increments its use count; a new
        source starts at one use and may push the oldest entry out.

        Args:
            source_id: Source identifier
            when: Time of use, defaults to now

        Returns:
            The updated record
        """
        when = when or datetime.now()
        with self._lock:
            existing = next((r for r in self._items if r.source_id == source_id), None)
            if existing is not None:
                self._items.remove(existing)
                record = RecentSource(
                    source_id=source_id,
                    last_used_at=when,
                    use_count=existing.use_count + 1,
                )
            else:
                record = RecentSource(source_id=source_id, last_used_at=when)

            self._items.insert(0, record)
            del self._items[self.max_items:]
            self._persist()

        return record

    def most_recent(self, limit: Optional[int] = None) -> list[RecentSource]:
        with self._lock:
            items = list(self._items)
        return items[:limit] if limit else items

    def most_frequent(self, limit: Optional[int] = None) -> list[RecentSource]:
        """Sources ordered by use count, ties broken by recency."""
        with self._lock:
            items = sorted(
                self._items,
                key=lambda r: (r.use_count, r.last_used_at),
                reverse=True,
            )
        return items[:limit] if limit else items

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self._persist()

    def _persist(self) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(self._items)
        except Exception as e:
            logger.warning(f"Failed to persist recent sources: {e}")
