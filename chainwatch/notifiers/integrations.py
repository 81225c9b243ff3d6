"""
External integration management: configuration CRUD, connection tests and
filtered delivery to Discord and Telegram.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse

from chainwatch.database.models import (
    AlertFilter,
    ExternalIntegration,
    IntegrationStatus,
    IntegrationType,
)
from chainwatch.database.repository import IntegrationRepository
from chainwatch.rules.types import AlertEvent, EventKind
from .base import DeliveryResult, Notifier, NotifierFactory, build_test_message

logger = logging.getLogger(__name__)

__all__ = [
    "ConnectionTestResult",
    "ExternalIntegration",
    "ExternalIntegrationManager",
    "SaveResult",
    "create_discord_integration",
    "create_telegram_integration",
]


@dataclass
class SaveResult:
    """Outcome of saving an integration."""

    success: bool
    message: str
    integration: Optional[ExternalIntegration] = None


@dataclass
class ConnectionTestResult:
    """Outcome of a connection test."""

    success: bool
    message: str


def _new_id(integration_type: IntegrationType) -> str:
    return f"{integration_type.value}-{uuid.uuid4().hex[:12]}"


def create_discord_integration(
    name: str,
    webhook_url: str,
    username: Optional[str] = None,
    alert_filter: Optional[AlertFilter] = None,
) -> ExternalIntegration:
    """Build a Discord integration with default filter settings."""
    config = {"webhook_url": webhook_url}
    if username:
        config["username"] = username
    return ExternalIntegration(
        id=_new_id(IntegrationType.DISCORD),
        type=IntegrationType.DISCORD,
        name=name,
        config=config,
        alert_filter=alert_filter or AlertFilter(),
    )


def create_telegram_integration(
    name: str,
    bot_token: str,
    chat_id: str,
    alert_filter: Optional[AlertFilter] = None,
) -> ExternalIntegration:
    """Build a Telegram integration with default filter settings."""
    return ExternalIntegration(
        id=_new_id(IntegrationType.TELEGRAM),
        type=IntegrationType.TELEGRAM,
        name=name,
        config={"bot_token": bot_token, "chat_id": str(chat_id)},
        alert_filter=alert_filter or AlertFilter(),
    )


def validate_integration(integration: ExternalIntegration) -> Optional[str]:
    """
    Check required configuration fields.

    Returns:
        Error message, or None if the integration is valid
    """
    if not integration.id:
        return "Integration id is required"
    if not integration.name or not integration.name.strip():
        return "Integration name is required"

    config = integration.config or {}

    if integration.type == IntegrationType.DISCORD:
        url = config.get("webhook_url")
        if not url:
            return "Missing Discord webhook URL"
        parsed = urlparse(str(url))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return f"Invalid Discord webhook URL: {url}"

    elif integration.type == IntegrationType.TELEGRAM:
        if not config.get("bot_token"):
            return "Missing Telegram bot token"
        if not config.get("chat_id"):
            return "Missing Telegram chat ID"

    else:
        return f"Unknown integration type: {integration.type}"

    return None


class ExternalIntegrationManager:
    """Owns integration configurations and their connection status."""

    def __init__(
        self,
        repository: Optional[IntegrationRepository] = None,
        notifier_factory: Callable[[ExternalIntegration], Notifier] = NotifierFactory.create,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize manager.

        Args:
            repository: Optional persistence for integrations
            notifier_factory: Builds the notifier for an integration
            clock: Time source for status updates
        """
        self.repository = repository
        self.notifier_factory = notifier_factory
        self.clock = clock
        self._lock = threading.RLock()
        self._integrations: dict[str, ExternalIntegration] = {}

        if repository is not None:
            self._integrations = {i.id: i for i in repository.load()}

    def save(self, integration: ExternalIntegration) -> SaveResult:
        """
        Validate and insert or replace an integration.

        Invalid integrations are rejected and nothing is stored.
        """
        error = validate_integration(integration)
        if error:
            return SaveResult(success=False, message=error)

        stored = copy.deepcopy(integration)
        stored.last_updated = self.clock()
        with self._lock:
            existed = stored.id in self._integrations
            self._integrations[stored.id] = stored
            self._persist()

        action = "updated" if existed else "added"
        logger.info(f"Integration {stored.name} ({stored.type.value}) {action}")
        return SaveResult(
            success=True,
            message=f"Integration {action}",
            integration=copy.deepcopy(stored),
        )

    def get(self, integration_id: str) -> Optional[ExternalIntegration]:
        with self._lock:
            integration = self._integrations.get(integration_id)
            return copy.deepcopy(integration) if integration else None

    def list_all(
        self, integration_type: Optional[Union[IntegrationType, str]] = None
    ) -> list[ExternalIntegration]:
        """List integrations, optionally of one type."""
        with self._lock:
            integrations = list(self._integrations.values())
        if integration_type is not None:
            wanted = IntegrationType(integration_type)
            integrations = [i for i in integrations if i.type == wanted]
        return copy.deepcopy(integrations)

    def delete(self, integration_id: str) -> bool:
        with self._lock:
            if integration_id not in self._integrations:
                return False
            del self._integrations[integration_id]
            self._persist()
            return True

    def test_connection(self, integration: ExternalIntegration) -> ConnectionTestResult:
        """
        Send a test message to the integration's target.

        Stored integrations are not modified and nothing is persisted.
        """
        error = validate_integration(integration)
        if error:
            return ConnectionTestResult(success=False, message=error)

        try:
            notifier = self.notifier_factory(copy.deepcopy(integration))
            message = build_test_message(integration)
            send_message = getattr(notifier, "send_message", None)
            if send_message is None:
                return ConnectionTestResult(
                    success=False,
                    message=f"{integration.type.value} cannot send test messages",
                )
            result = send_message(message)
        except Exception as e:
            logger.warning(f"Connection test for {integration.name} failed: {e}")
            return ConnectionTestResult(success=False, message=str(e))

        if result.success:
            return ConnectionTestResult(success=True, message="Connection successful")
        return ConnectionTestResult(
            success=False,
            message=f"Connection failed: {result.detail or 'unknown error'}",
        )

    def accepts(self, integration: ExternalIntegration, event: AlertEvent) -> bool:
        """Whether an integration's filter lets an event through."""
        alert_filter = integration.alert_filter
        floor = alert_filter.min_severity
        if event.kind == EventKind.PRICE_ALERT:
            if not alert_filter.include_price_alerts:
                return False
            floor = alert_filter.price_alert_min_severity
        if event.severity.value < floor.value:
            return False
        if alert_filter.categories and event.category not in alert_filter.categories:
            return False
        return True

    def deliver(self, integration: ExternalIntegration, event: AlertEvent) -> DeliveryResult:
        """
        Deliver one event to one integration.

        Updates the integration's status and last-updated time from the
        outcome. Never raises.
        """
        channel = f"{integration.type.value}:{integration.id}"

        if not integration.enabled:
            return DeliveryResult.skipped(channel, "integration disabled")
        if not self.accepts(integration, event):
            return DeliveryResult.skipped(channel, "filtered out")

        try:
            notifier = self.notifier_factory(integration)
            result = notifier.send(event)
        except Exception as e:
            result = DeliveryResult.failed(channel, str(e))

        result = DeliveryResult(result.status, channel, result.detail)

        if result.success:
            self._update_status(integration, IntegrationStatus.CONNECTED, None)
        else:
            logger.error(f"Delivery to {integration.name} failed: {result.detail}")
            self._update_status(integration, IntegrationStatus.ERROR, result.detail)

        return result

    def dispatch(
        self, event: AlertEvent, types: Optional[list[str]] = None
    ) -> list[DeliveryResult]:
        """
        Deliver an event to every stored integration independently.

        Args:
            event: Event to deliver
            types: Integration types to deliver to; None means every type

        Returns:
            One result per selected integration
        """
        results = []
        for integration in self.list_all():
            if types is not None and integration.type.value not in types:
                continue
            try:
                results.append(self.deliver(integration, event))
            except Exception as e:
                logger.exception(f"Unexpected error delivering to {integration.name}")
                results.append(
                    DeliveryResult.failed(f"{integration.type.value}:{integration.id}", str(e))
                )
        return results

    def _update_status(
        self,
        integration: ExternalIntegration,
        status: IntegrationStatus,
        error: Optional[str],
    ) -> None:
        now = self.clock()
        previous = integration.status
        integration.status = status
        integration.last_updated = now
        integration.last_error = error

        with self._lock:
            stored = self._integrations.get(integration.id)
            if stored is not None:
                stored.status = status
                stored.last_updated = now
                stored.last_error = error
                self._persist()

        if previous != status:
            logger.info(f"Integration {integration.name} is now {status.value}")

    def _persist(self) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(list(self._integrations.values()))
        except Exception as e:
            logger.warning(f"Failed to persist integrations: {e}")
