"""
Repository classes for persisted collections.

Each collection is one JSON-encoded value in the key-value store. Unreadable
values are logged and treated as an empty collection.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

from chainwatch.rules.conditions import parse_condition
from chainwatch.rules.types import (
    AlertEvent,
    AlertRule,
    EventAction,
    EventKind,
    EventStatus,
    NotificationChannels,
    PriceAlert,
    Severity,
    condition_params,
)
from .connection import Database
from .models import (
    AlertFilter,
    ExternalIntegration,
    IntegrationStatus,
    IntegrationType,
    RecentSource,
)

logger = logging.getLogger(__name__)

NOTIFICATIONS_KEY = "notification-history"
PRICE_ALERTS_KEY = "price-alerts"
ALERT_RULES_KEY = "alert-rules"
RECENT_SOURCES_KEY = "recent-sources"
INTEGRATIONS_KEY = "integrations"

MAX_NOTIFICATIONS = 50
MAX_RECENT_SOURCES = 5


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class KeyValueRepository:
    """Raw access to the key-value table."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, key: str) -> Optional[str]:
        """Get the stored value for a key."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
        if row is None:
            return None
        return row["value"]

    def set(self, key: str, value: str) -> None:
        """Insert or replace the value for a key."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO kv_store (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )
            self.db.connection.commit()

    def delete(self, key: str) -> None:
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self.db.connection.commit()

    def load_list(self, key: str) -> list[Any]:
        """Load a JSON list, returning [] for missing or corrupt values."""
        try:
            raw = self.get(key)
        except sqlite3.Error as e:
            logger.error(f"Failed to read {key}, treating as empty: {e}")
            return []
        if raw is None:
            return []
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt value for {key}, resetting: {e}")
            return []
        if not isinstance(value, list):
            logger.warning(f"Unexpected value type for {key}, resetting")
            return []
        return value

    def save_list(self, key: str, items: list[Any]) -> None:
        self.set(key, json.dumps(items, default=str))


class _CollectionRepository:
    """Base for repositories storing one list under one key."""

    key = ""
    max_items: Optional[int] = None

    def __init__(self, db: Database):
        self.db = db
        self.kv = KeyValueRepository(db)

    def load(self) -> list:
        """Load all items; a record that fails to decode empties the collection."""
        records = self.kv.load_list(self.key)
        try:
            return [self._from_record(record) for record in records]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Unreadable record in {self.key}, resetting: {e}")
            return []

    def save(self, items: list) -> None:
        if self.max_items is not None:
            items = items[: self.max_items]
        self.kv.save_list(self.key, [self._to_record(item) for item in items])

    def clear(self) -> None:
        self.kv.delete(self.key)

    def _to_record(self, item) -> dict[str, Any]:
        raise NotImplementedError

    def _from_record(self, record: dict[str, Any]):
        raise NotImplementedError


def _channels_to_record(channels: NotificationChannels) -> dict[str, bool]:
    return {
        "in_app": channels.in_app,
        "sound": channels.sound,
        "push": channels.push,
        "discord": channels.discord,
        "telegram": channels.telegram,
    }


def _channels_from_record(record: Optional[dict[str, Any]]) -> NotificationChannels:
    record = record or {}
    return NotificationChannels(
        in_app=bool(record.get("in_app", True)),
        sound=bool(record.get("sound", True)),
        push=bool(record.get("push", True)),
        discord=bool(record.get("discord", False)),
        telegram=bool(record.get("telegram", False)),
    )


class NotificationRepository(_CollectionRepository):
    """Notification history, newest first, capped at 50 entries."""

    key = NOTIFICATIONS_KEY
    max_items = MAX_NOTIFICATIONS

    def _to_record(self, event: AlertEvent) -> dict[str, Any]:
        return {
            "id": event.id,
            "kind": event.kind.value,
            "category": event.category,
            "title": event.title,
            "message": event.message,
            "severity": event.severity.label,
            "timestamp": _format_datetime(event.timestamp),
            "status": event.status.value,
            "source_id": event.source_id,
            "actions": [
                {"label": a.label, "action": a.action, "href": a.href}
                for a in event.actions
            ],
            "metadata": event.metadata,
        }

    def _from_record(self, record: dict[str, Any]) -> AlertEvent:
        return AlertEvent(
            id=record["id"],
            kind=EventKind(record["kind"]),
            category=record["category"],
            title=record["title"],
            message=record["message"],
            severity=Severity.parse(record["severity"]),
            timestamp=datetime.fromisoformat(record["timestamp"]),
            status=EventStatus(record.get("status", "unread")),
            source_id=record.get("source_id"),
            actions=[
                EventAction(label=a["label"], action=a["action"], href=a.get("href"))
                for a in record.get("actions", [])
            ],
            metadata=dict(record.get("metadata") or {}),
        )


class PriceAlertRepository(_CollectionRepository):
    """Price alert definitions."""

    key = PRICE_ALERTS_KEY

    def _to_record(self, alert: PriceAlert) -> dict[str, Any]:
        return {
            "id": alert.id,
            "source_id": alert.source_id,
            "instrument": alert.instrument,
            "condition": {
                "type": alert.condition.type.value,
                "params": condition_params(alert.condition),
            },
            "timeframe": alert.timeframe,
            "repeatable": alert.repeatable,
            "enabled": alert.enabled,
            "created_at": _format_datetime(alert.created_at),
            "last_triggered_at": _format_datetime(alert.last_triggered_at),
            "name": alert.name,
            "channels": _channels_to_record(alert.channels),
        }

    def _from_record(self, record: dict[str, Any]) -> PriceAlert:
        condition = record["condition"]
        return PriceAlert(
            id=record["id"],
            source_id=str(record["source_id"]),
            instrument=record["instrument"],
            condition=parse_condition(condition["type"], condition["params"]),
            timeframe=record.get("timeframe", "24h"),
            repeatable=bool(record.get("repeatable", False)),
            enabled=bool(record.get("enabled", True)),
            created_at=_parse_datetime(record.get("created_at")) or datetime.now(),
            last_triggered_at=_parse_datetime(record.get("last_triggered_at")),
            name=record.get("name"),
            channels=_channels_from_record(record.get("channels")),
        )


class AlertRuleRepository(_CollectionRepository):
    """Multi-metric alert rules."""

    key = ALERT_RULES_KEY

    def _to_record(self, rule: AlertRule) -> dict[str, Any]:
        return {
            "id": rule.id,
            "name": rule.name,
            "enabled": rule.enabled,
            "source_ids": list(rule.source_ids),
            "categories": list(rule.categories),
            "threshold": rule.threshold,
            "minimum_volume": rule.minimum_volume,
            "timeframes": list(rule.timeframes),
            "severity": rule.severity.label,
            "channels": _channels_to_record(rule.channels),
        }

    def _from_record(self, record: dict[str, Any]) -> AlertRule:
        return AlertRule(
            id=record["id"],
            name=record["name"],
            enabled=bool(record.get("enabled", True)),
            source_ids=[str(s) for s in record.get("source_ids", [])],
            categories=list(record.get("categories", [])),
            threshold=float(record.get("threshold", 5.0)),
            minimum_volume=float(record.get("minimum_volume", 0.0)),
            timeframes=list(record.get("timeframes", [])),
            severity=Severity.parse(record.get("severity", "medium")),
            channels=_channels_from_record(record.get("channels")),
        )


class RecentSourceRepository(_CollectionRepository):
    """Recently used sources, most recent first, capped at 5 entries."""

    key = RECENT_SOURCES_KEY
    max_items = MAX_RECENT_SOURCES

    def _to_record(self, recent: RecentSource) -> dict[str, Any]:
        return {
            "source_id": recent.source_id,
            "last_used_at": _format_datetime(recent.last_used_at),
            "use_count": recent.use_count,
        }

    def _from_record(self, record: dict[str, Any]) -> RecentSource:
        return RecentSource(
            source_id=str(record["source_id"]),
            last_used_at=datetime.fromisoformat(record["last_used_at"]),
            use_count=int(record.get("use_count", 1)),
        )


class IntegrationRepository(_CollectionRepository):
    """External integration configurations."""

    key = INTEGRATIONS_KEY

    def _to_record(self, integration: ExternalIntegration) -> dict[str, Any]:
        alert_filter = integration.alert_filter
        return {
            "id": integration.id,
            "type": integration.type.value,
            "name": integration.name,
            "config": dict(integration.config),
            "alert_filter": {
                "min_severity": alert_filter.min_severity.label,
                "categories": list(alert_filter.categories),
                "include_price_alerts": alert_filter.include_price_alerts,
                "price_alert_min_severity": alert_filter.price_alert_min_severity.label,
                "include_price_data": alert_filter.include_price_data,
            },
            "status": integration.status.value,
            "enabled": integration.enabled,
            "last_updated": _format_datetime(integration.last_updated),
            "last_error": integration.last_error,
        }

    def _from_record(self, record: dict[str, Any]) -> ExternalIntegration:
        filter_record = record.get("alert_filter") or {}
        return ExternalIntegration(
            id=record["id"],
            type=IntegrationType(record["type"]),
            name=record["name"],
            config=dict(record.get("config") or {}),
            alert_filter=AlertFilter(
                min_severity=Severity.parse(filter_record.get("min_severity", "medium")),
                categories=list(filter_record.get("categories", [])),
                include_price_alerts=bool(filter_record.get("include_price_alerts", True)),
                price_alert_min_severity=Severity.parse(
                    filter_record.get("price_alert_min_severity", "medium")
                ),
                include_price_data=bool(filter_record.get("include_price_data", True)),
            ),
            status=IntegrationStatus(record.get("status", "pending")),
            enabled=bool(record.get("enabled", True)),
            last_updated=_parse_datetime(record.get("last_updated")) or datetime.now(),
            last_error=record.get("last_error"),
        )
