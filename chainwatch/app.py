"""
ChainWatch application: wires the feed, snapshot store, rule registry,
dispatcher, notification channels and analytics together.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from chainwatch.analytics.engine import AnalyticsEngine
from chainwatch.config import AppConfig, FeedConfig
from chainwatch.data.feeds import CoinMarketCapFeed, MetricFeed, SimulatedMetricFeed
from chainwatch.data.recent import RecentSourceTracker
from chainwatch.data.snapshots import MetricSnapshotStore, MetricSource
from chainwatch.database.connection import Database
from chainwatch.database.models import AlertFilter, ExternalIntegration, IntegrationType
from chainwatch.database.repository import (
    AlertRuleRepository,
    IntegrationRepository,
    NotificationRepository,
    PriceAlertRepository,
    RecentSourceRepository,
)
from chainwatch.history import AlertHistory, TriggerArchive
from chainwatch.notifiers.integrations import ExternalIntegrationManager
from chainwatch.notifiers.local import InAppNotifier, PushNotifier, SoundNotifier, SoundSettings
from chainwatch.notifiers.router import NotificationRouter
from chainwatch.rules.engine import AlertDispatcher
from chainwatch.rules.registry import RuleRegistry
from chainwatch.rules.types import AlertEvent, NotificationChannels, Severity
from chainwatch.scheduler import Scheduler

logger = logging.getLogger(__name__)

METRICS_STREAM = "metrics"
ANALYTICS_STREAM = "analytics"

SYSTEM_CHANNELS = NotificationChannels(in_app=True, sound=False, push=False)


def build_feed(feed_config: FeedConfig, sources: list[MetricSource]) -> MetricFeed:
    """
    Create the configured metric feed.

    Raises:
        ValueError: If the provider is unknown
    """
    if feed_config.provider == "simulated":
        return SimulatedMetricFeed(sources, volatility=feed_config.volatility)
    elif feed_config.provider == "coinmarketcap":
        return CoinMarketCapFeed(api_key=feed_config.api_key, sources=sources)
    else:
        raise ValueError(f"Unknown feed provider: {feed_config.provider}")


def integration_from_config(entry: dict[str, Any]) -> ExternalIntegration:
    """
    Build an integration from a configuration entry.

    Entries without an id get one derived from type and name, so the same
    entry maps to the same stored integration across restarts.

    Raises:
        ValueError: If the type or severity is unknown
    """
    integration_type = IntegrationType(str(entry.get("type", "")).lower())
    name = str(entry.get("name") or integration_type.value)
    integration_id = entry.get("id") or f"{integration_type.value}-{name.lower().replace(' ', '-')}"

    filter_dict = entry.get("alert_filter") or {}
    alert_filter = AlertFilter(
        min_severity=Severity.parse(filter_dict.get("min_severity", "medium")),
        categories=list(filter_dict.get("categories", [])),
        include_price_alerts=bool(filter_dict.get("include_price_alerts", True)),
        price_alert_min_severity=Severity.parse(
            filter_dict.get("price_alert_min_severity", "medium")
        ),
        include_price_data=bool(filter_dict.get("include_price_data", True)),
    )

    return ExternalIntegration(
        id=str(integration_id),
        type=integration_type,
        name=name,
        config=dict(entry.get("config") or {}),
        alert_filter=alert_filter,
        enabled=bool(entry.get("enabled", True)),
    )


class ChainWatchApp:
    """Main ChainWatch application."""

    def __init__(
        self,
        config: AppConfig,
        db: Optional[Database] = None,
        feed: Optional[MetricFeed] = None,
        deliver_external: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize ChainWatch app.

        Args:
            config: Application configuration
            db: Initialized database; None keeps all state in memory
            feed: Metric feed; defaults to the configured provider
            deliver_external: Whether events reach external integrations
            clock: Time source for alerts and analytics
        """
        self.config = config
        self.db = db
        self.clock = clock

        self.sources: dict[str, MetricSource] = {
            source.id: source.to_source() for source in config.sources
        }

        # Persistence is optional
        self.history = AlertHistory(
            capacity=config.alerts.history_size,
            repository=NotificationRepository(db) if db else None,
        )
        self.archive = TriggerArchive()
        self.registry = RuleRegistry(
            rule_repository=AlertRuleRepository(db) if db else None,
            alert_repository=PriceAlertRepository(db) if db else None,
        )
        self.recent = RecentSourceTracker(RecentSourceRepository(db) if db else None)
        self.integrations = ExternalIntegrationManager(
            IntegrationRepository(db) if db else None,
            clock=clock,
        )
        self.snapshots = MetricSnapshotStore()

        # Notification channels
        sound_config = config.notifications.sound
        self.in_app = InAppNotifier(self.history)
        self.router = NotificationRouter(
            in_app=self.in_app,
            sound=SoundNotifier(
                SoundSettings(
                    enabled=sound_config.enabled,
                    volume=sound_config.volume,
                    quiet_start=sound_config.quiet_start,
                    quiet_end=sound_config.quiet_end,
                    enabled_sounds=dict(sound_config.sounds),
                ),
                clock=clock,
            ),
            push=PushNotifier(config.notifications.push.permission_granted),
            integrations=self.integrations if deliver_external else None,
        )

        self.dispatcher = AlertDispatcher(
            registry=self.registry,
            snapshots=self.snapshots,
            history=self.history,
            archive=self.archive,
            router=self.router,
            sources=self.sources,
            cooldown_seconds=config.alerts.cooldown_seconds,
            clock=clock,
        )
        self.analytics = AnalyticsEngine(
            self.history,
            self.archive,
            sources=self.sources,
            anomaly_k=config.analytics.anomaly_k,
            clock=clock,
        )

        self.feed = feed or build_feed(config.feed, list(self.sources.values()))
        self.scheduler = Scheduler()
        self.last_anomalies: Optional[dict[str, Any]] = None

        self._seed_integrations()

    def _seed_integrations(self) -> None:
        """Load integrations declared in configuration into the manager."""
        for entry in self.config.integrations:
            try:
                integration = integration_from_config(entry)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring invalid integration entry: {e}")
                continue

            # Keep the connection status recorded by earlier runs
            existing = self.integrations.get(integration.id)
            if existing is not None:
                integration.status = existing.status
                integration.last_error = existing.last_error

            result = self.integrations.save(integration)
            if not result.success:
                logger.warning(f"Integration {integration.name} rejected: {result.message}")

    def refresh_source(self, source_id: str) -> list[AlertEvent]:
        """
        Refresh one source and evaluate everything against it.

        Args:
            source_id: Source identifier

        Returns:
            Events fired
        """
        readings = self.feed.refresh(source_id)
        updated = self.snapshots.update_many(source_id, readings)
        logger.debug(f"Refreshed {len(updated)} metrics for {source_id}")
        return self.dispatcher.run_pass(source_id)

    def run_tick(self) -> list[AlertEvent]:
        """Refresh every source; a failing source does not stop the others."""
        events = []

        for source_id in self.sources:
            try:
                events.extend(self.refresh_source(source_id))
            except Exception:
                logger.exception(f"Error refreshing {source_id}")

        if events:
            logger.info(f"Tick fired {len(events)} alerts")
        return events

    def run_analytics(self) -> dict[str, Any]:
        """Run anomaly detection over the configured timeframe."""
        result = self.analytics.detect_anomalies(self.config.analytics.timeframe)
        for anomaly in result["anomalies"]:
            logger.warning(
                f"Anomaly ({anomaly['severity']}): {anomaly['description']} - {anomaly['details']}"
            )
        self.last_anomalies = result
        return result

    def start(self) -> None:
        """Start the periodic refresh streams."""
        schedule = self.config.schedule
        if METRICS_STREAM not in self.scheduler.streams:
            self.scheduler.add_stream(
                METRICS_STREAM, schedule.metrics_interval_seconds, self.run_tick
            )
            self.scheduler.add_stream(
                ANALYTICS_STREAM, schedule.analytics_interval_seconds, self.run_analytics
            )

        self.dispatcher.emit_system_event(
            "ChainWatch started",
            f"Monitoring {len(self.sources)} sources",
            channels=SYSTEM_CHANNELS,
        )
        self.scheduler.start()
        logger.info(f"ChainWatch started with {len(self.sources)} sources")

    def request_refresh(self) -> None:
        """Refresh metrics now instead of at the next scheduled tick."""
        if METRICS_STREAM in self.scheduler.streams:
            self.scheduler.request_refresh(METRICS_STREAM)
        else:
            self.run_tick()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel all refresh streams and wait for them to finish."""
        if self.scheduler.shutdown(timeout):
            logger.info("ChainWatch stopped")
        else:
            logger.warning("ChainWatch stopped with refresh workers still running")

    def close(self) -> None:
        self.stop()
        if self.db is not None:
            self.db.close()
