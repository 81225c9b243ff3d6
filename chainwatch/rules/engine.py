"""
Alert dispatcher: evaluates rules and price alerts against metric snapshots,
applies repeat policy, records history and hands events to the router.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from chainwatch.data.snapshots import (
    TIMEFRAME_INSTRUMENTS,
    MetricSnapshot,
    MetricSnapshotStore,
    MetricSource,
)
from chainwatch.history import AlertHistory, TriggerArchive
from .conditions import evaluate_condition
from .formatting import (
    format_price_alert_message,
    format_price_alert_title,
    format_rule_message,
    format_rule_title,
)
from .registry import RuleRegistry
from .severity import classify_severity
from .types import (
    AlertEvent,
    AlertRule,
    EventAction,
    EventKind,
    EventStatus,
    NotificationChannels,
    PriceAlert,
    PriceAlertTrigger,
    Severity,
    condition_params,
)

if TYPE_CHECKING:
    from chainwatch.notifiers.router import NotificationRouter

logger = logging.getLogger(__name__)

__all__ = ["AlertDispatcher"]


class AlertDispatcher:
    """Runs evaluation passes over every enabled rule and price alert."""

    def __init__(
        self,
        registry: RuleRegistry,
        snapshots: MetricSnapshotStore,
        history: AlertHistory,
        archive: TriggerArchive,
        router: Optional["NotificationRouter"] = None,
        sources: Optional[dict[str, MetricSource]] = None,
        cooldown_seconds: float = 0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize dispatcher.

        Args:
            registry: Rule and price alert store
            snapshots: Latest metric readings
            history: Bounded notification list
            archive: Unbounded price alert trigger archive
            router: Delivers events to channels; None records history only
            sources: Configured sources by id, for names and explorer links
            cooldown_seconds: Minimum gap between repeat firings of the same
                (rule or alert, source, metric); 0 disables the cooldown
            clock: Time source
        """
        self.registry = registry
        self.snapshots = snapshots
        self.history = history
        self.archive = archive
        self.router = router
        self.sources = sources or {}
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock

        self._pass_lock = threading.Lock()
        self._last_fired: dict[tuple[str, str, str, str], datetime] = {}
        self._last_transition: dict[tuple[str, str, str], tuple] = {}

    def run_pass(self, source_id: Optional[str] = None) -> list[AlertEvent]:
        """
        Evaluate everything once.

        Args:
            source_id: Only evaluate against this source

        Returns:
            Events fired during the pass
        """
        with self._pass_lock:
            events = self.evaluate_price_alerts(source_id)
            events.extend(self.evaluate_rules(source_id))

        logger.debug(
            f"Evaluation pass{f' for {source_id}' if source_id else ''}: "
            f"{len(events)} events"
        )
        return events

    def evaluate_price_alerts(self, source_id: Optional[str] = None) -> list[AlertEvent]:
        """Evaluate every enabled price alert, skipping malformed ones."""
        events = []

        for alert in self.registry.list_alerts(source_id=source_id, enabled=True):
            try:
                event = self._evaluate_price_alert(alert)
            except Exception:
                logger.exception(f"Skipping price alert {alert.id}")
                continue
            if event is not None:
                events.append(event)

        return events

    def evaluate_rules(self, source_id: Optional[str] = None) -> list[AlertEvent]:
        """Evaluate every enabled alert rule, skipping malformed ones."""
        events = []

        for rule in self.registry.list_rules(enabled=True):
            try:
                events.extend(self._evaluate_rule(rule, source_id))
            except Exception:
                logger.exception(f"Skipping alert rule {rule.id}")

        return events

    def emit_system_event(
        self,
        title: str,
        message: str,
        severity: Severity = Severity.LOW,
        source_id: Optional[str] = None,
        channels: Optional[NotificationChannels] = None,
    ) -> AlertEvent:
        """Record and route a system notice."""
        channels = channels or NotificationChannels()
        event = AlertEvent(
            kind=EventKind.SYSTEM,
            category="system",
            title=title,
            message=message,
            severity=severity,
            timestamp=self.clock(),
            status=self._initial_status(channels),
            source_id=source_id,
            actions=[EventAction(label="Dismiss", action="dismiss")],
        )
        return self._fire(event, channels)

    def _evaluate_price_alert(self, alert: PriceAlert) -> Optional[AlertEvent]:
        if not alert.enabled or alert.is_terminal:
            return None

        snapshot = self.snapshots.get(alert.source_id, alert.metric_key)
        if snapshot is None:
            return None

        if not evaluate_condition(alert.condition, snapshot.current, snapshot.previous):
            return None

        now = self.clock()
        cooldown_key = ("price-alert", alert.id, alert.source_id, alert.metric_key)
        if alert.repeatable and self._in_cooldown(cooldown_key, now):
            return None

        if not self.registry.mark_triggered(alert.id, now):
            # Deleted or already fired since the listing was taken
            return None
        self._last_fired[cooldown_key] = now

        severity = classify_severity(alert.condition)
        message = format_price_alert_message(
            alert.instrument, alert.condition, snapshot.current
        )
        source = self.sources.get(alert.source_id)

        self.archive.append(
            PriceAlertTrigger(
                alert_id=alert.id,
                source_id=alert.source_id,
                instrument=alert.instrument,
                condition_type=alert.condition.type,
                trigger_value=snapshot.current,
                previous_value=snapshot.previous,
                triggered_at=now,
                message=message,
                params=condition_params(alert.condition),
            )
        )

        actions = [
            EventAction(label="View Chart", action="view-chart"),
            EventAction(label="Dismiss", action="dismiss"),
        ]
        if source and source.explorer_url:
            actions.append(
                EventAction(label="View Source", action="view-source", href=source.explorer_url)
            )

        event = AlertEvent(
            kind=EventKind.PRICE_ALERT,
            category="price",
            title=alert.name or format_price_alert_title(alert.instrument, alert.condition),
            message=message,
            severity=severity,
            timestamp=now,
            status=self._initial_status(alert.channels),
            source_id=alert.source_id,
            actions=actions,
            metadata={
                "alert_id": alert.id,
                "instrument": alert.instrument,
                "condition_type": alert.condition.type.value,
                "params": condition_params(alert.condition),
                "current": snapshot.current,
                "previous": snapshot.previous,
                "timeframe": alert.timeframe,
                "repeatable": alert.repeatable,
                "source_name": source.name if source else alert.source_id,
            },
        )
        logger.info(f"Price alert fired: {message}")
        return self._fire(event, alert.channels)

    def _evaluate_rule(
        self, rule: AlertRule, source_id: Optional[str]
    ) -> list[AlertEvent]:
        events = []

        for sid in self._rule_sources(rule, source_id):
            if rule.minimum_volume > 0:
                volume = self._source_volume(sid)
                if volume is None or volume < rule.minimum_volume:
                    continue

            for snapshot in self.snapshots.for_source(sid):
                event = self._evaluate_rule_metric(rule, snapshot)
                if event is not None:
                    events.append(event)

        return events

    def _evaluate_rule_metric(
        self, rule: AlertRule, snapshot: MetricSnapshot
    ) -> Optional[AlertEvent]:
        category = snapshot.category
        instrument = snapshot.instrument

        if rule.categories and category not in rule.categories:
            return None

        timeframe = instrument if instrument in TIMEFRAME_INSTRUMENTS else None
        if timeframe and rule.timeframes and timeframe not in rule.timeframes:
            return None

        change = snapshot.percent_change
        if change is None or abs(change) < rule.threshold:
            return None

        # One firing per observed move of a metric
        transition_key = (rule.id, snapshot.source_id, snapshot.metric_key)
        transition = (snapshot.previous, snapshot.current)
        if self._last_transition.get(transition_key) == transition:
            return None

        now = self.clock()
        cooldown_key = ("rule", rule.id, snapshot.source_id, snapshot.metric_key)
        if self._in_cooldown(cooldown_key, now):
            return None

        self._last_transition[transition_key] = transition
        self._last_fired[cooldown_key] = now

        source = self.sources.get(snapshot.source_id)
        source_name = source.name if source else snapshot.source_id
        label = f"{category} {instrument}" if instrument and not timeframe else category

        actions = [EventAction(label="Dismiss", action="dismiss")]
        if source and source.explorer_url:
            actions.append(
                EventAction(label="View Source", action="view-source", href=source.explorer_url)
            )

        event = AlertEvent(
            kind=EventKind.RULE,
            category=category,
            title=format_rule_title(source_name, change),
            message=format_rule_message(source_name, label, change, snapshot.current, timeframe),
            severity=rule.severity,
            timestamp=now,
            status=self._initial_status(rule.channels),
            source_id=snapshot.source_id,
            actions=actions,
            metadata={
                "rule_id": rule.id,
                "rule_name": rule.name,
                "metric_key": snapshot.metric_key,
                "change": change,
                "current": snapshot.current,
                "previous": snapshot.previous,
                "timeframe": timeframe,
                "source_name": source_name,
            },
        )
        logger.info(f"Rule {rule.name} fired: {event.message}")
        return self._fire(event, rule.channels)

    def _rule_sources(self, rule: AlertRule, source_id: Optional[str]) -> list[str]:
        if rule.source_ids:
            targets = list(rule.source_ids)
        elif self.sources:
            targets = list(self.sources)
        else:
            targets = sorted({s.source_id for s in self.snapshots.all()})

        if source_id is not None:
            targets = [sid for sid in targets if sid == source_id]
        return targets

    def _source_volume(self, source_id: str) -> Optional[float]:
        """Volume reading of a source, preferring the 24h figure."""
        volumes = [s for s in self.snapshots.for_source(source_id) if s.category == "volume"]
        if not volumes:
            return None
        for snapshot in volumes:
            if snapshot.instrument == "24h":
                return snapshot.current
        return volumes[0].current

    def _in_cooldown(self, key: tuple[str, str, str, str], now: datetime) -> bool:
        if not self.cooldown:
            return False
        last = self._last_fired.get(key)
        return last is not None and now - last < self.cooldown

    def _initial_status(self, channels: NotificationChannels) -> EventStatus:
        return EventStatus.UNREAD if channels.in_app else EventStatus.READ

    def _fire(self, event: AlertEvent, channels: NotificationChannels) -> AlertEvent:
        event = self.history.add(event)
        if self.router is not None:
            try:
                self.router.route(event, channels)
            except Exception:
                logger.exception(f"Routing failed for event {event.id}")
        return event
