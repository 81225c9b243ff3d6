"""
External integration manager tests.
"""

from unittest.mock import MagicMock, Mock, patch

import pytest

from chainwatch.database.models import (
    AlertFilter,
    ExternalIntegration,
    IntegrationStatus,
    IntegrationType,
)
from chainwatch.database.repository import IntegrationRepository
from chainwatch.notifiers.base import DeliveryResult, DeliveryStatus
from chainwatch.notifiers.integrations import (
    ExternalIntegrationManager,
    create_discord_integration,
    create_telegram_integration,
    validate_integration,
)
from chainwatch.rules.types import EventKind, Severity


def _ok_response() -> Mock:
    response = Mock()
    response.status_code = 204
    response.ok = True
    return response


@pytest.fixture
def manager(db, clock):
    return ExternalIntegrationManager(repository=IntegrationRepository(db), clock=clock)


class TestValidation:
    """Test integration validation."""

    def test_valid_discord(self, sample_discord_webhook_url):
        """Should accept a well-formed webhook URL."""
        integration = create_discord_integration("Ops", sample_discord_webhook_url)
        assert validate_integration(integration) is None
        assert integration.id.startswith("discord-")

    def test_invalid_webhook_url(self):
        """Should reject a URL without scheme or host."""
        integration = create_discord_integration("Ops", "not a url")
        assert validate_integration(integration).startswith("Invalid Discord webhook URL")

    def test_missing_telegram_fields(self):
        """Should require a token and chat id."""
        assert validate_integration(create_telegram_integration("Bot", "", "1")) == (
            "Missing Telegram bot token"
        )
        assert validate_integration(create_telegram_integration("Bot", "123:ABC", "")) == (
            "Missing Telegram chat ID"
        )

    def test_missing_name(self, sample_discord_webhook_url):
        """Should require a name."""
        integration = create_discord_integration("  ", sample_discord_webhook_url)
        assert validate_integration(integration) == "Integration name is required"


class TestIntegrationCrud:
    """Test storing integrations."""

    def test_save_and_reload(self, db, manager, sample_discord_webhook_url, clock):
        """Should persist saved integrations."""
        integration = create_discord_integration("Ops", sample_discord_webhook_url)

        result = manager.save(integration)

        assert result.success is True
        assert result.message == "Integration added"
        assert result.integration.last_updated == clock.now

        reloaded = ExternalIntegrationManager(repository=IntegrationRepository(db))
        stored = reloaded.get(integration.id)
        assert stored.name == "Ops"
        assert stored.config["webhook_url"] == sample_discord_webhook_url

    def test_update_message(self, manager, sample_discord_webhook_url):
        """Should report updates of existing ids."""
        integration = create_discord_integration("Ops", sample_discord_webhook_url)
        manager.save(integration)
        integration.name = "Ops 2"

        assert manager.save(integration).message == "Integration updated"
        assert manager.get(integration.id).name == "Ops 2"

    def test_invalid_not_saved(self, manager):
        """Should not store invalid integrations."""
        result = manager.save(create_discord_integration("Ops", "ftp://x"))

        assert result.success is False
        assert manager.list_all() == []

    def test_list_by_type_and_delete(self, manager, sample_discord_webhook_url):
        """Should filter by type and remove by id."""
        discord = create_discord_integration("Ops", sample_discord_webhook_url)
        telegram = create_telegram_integration("Bot", "123:ABC", "42")
        manager.save(discord)
        manager.save(telegram)

        assert [i.id for i in manager.list_all("telegram")] == [telegram.id]
        assert manager.delete(discord.id) is True
        assert manager.delete(discord.id) is False
        assert [i.id for i in manager.list_all()] == [telegram.id]


class TestConnectionTest:
    """Test connection checks."""

    def test_invalid_endpoint_fails_without_persisting(self, db, manager):
        """Should fail for an invalid URL and store nothing."""
        integration = create_discord_integration("Ops", "not a url")

        with patch("requests.post") as mock_post:
            result = manager.test_connection(integration)

        assert result.success is False
        mock_post.assert_not_called()
        assert manager.list_all() == []
        assert IntegrationRepository(db).load() == []

    def test_success(self, manager, sample_discord_webhook_url):
        """Should post a test message."""
        integration = create_discord_integration("Ops", sample_discord_webhook_url)

        with patch("requests.post") as mock_post:
            mock_post.return_value = _ok_response()
            result = manager.test_connection(integration)

        assert result.success is True
        assert result.message == "Connection successful"
        embed = mock_post.call_args.kwargs["json"]["embeds"][0]
        assert embed["title"] == "Connection Test"

    def test_remote_failure(self, manager, sample_discord_webhook_url):
        """Should report the remote error."""
        integration = create_discord_integration("Ops", sample_discord_webhook_url)

        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 404
            mock_post.return_value.ok = False
            mock_post.return_value.text = "Unknown Webhook"
            result = manager.test_connection(integration)

        assert result.success is False
        assert result.message.startswith("Connection failed")
        assert "Unknown Webhook" in result.message

    def test_does_not_touch_stored_status(self, manager, sample_discord_webhook_url):
        """Should leave the stored integration unchanged."""
        integration = create_discord_integration("Ops", sample_discord_webhook_url)
        manager.save(integration)

        with patch("requests.post") as mock_post:
            mock_post.return_value = _ok_response()
            manager.test_connection(integration)

        assert manager.get(integration.id).status == IntegrationStatus.PENDING


class TestDelivery:
    """Test filtered delivery and status tracking."""

    @pytest.fixture
    def notifier(self):
        notifier = MagicMock()
        notifier.send.return_value = DeliveryResult.delivered("discord")
        return notifier

    @pytest.fixture
    def integration(self, sample_discord_webhook_url):
        return create_discord_integration("Ops", sample_discord_webhook_url)

    def test_success_marks_connected(self, db, clock, notifier, integration, make_event):
        """Should mark the integration connected after delivery."""
        manager = ExternalIntegrationManager(
            repository=IntegrationRepository(db),
            notifier_factory=lambda i: notifier,
            clock=clock,
        )
        manager.save(integration)
        clock.advance(minutes=1)

        result = manager.deliver(integration, make_event())

        assert result.success is True
        assert result.channel == f"discord:{integration.id}"
        stored = manager.get(integration.id)
        assert stored.status == IntegrationStatus.CONNECTED
        assert stored.last_updated == clock.now

    def test_failure_marks_error(self, notifier, integration, make_event):
        """Should record the error on failure."""
        notifier.send.return_value = DeliveryResult.failed("discord", "HTTP 500: oops")
        manager = ExternalIntegrationManager(notifier_factory=lambda i: notifier)
        manager.save(integration)

        result = manager.deliver(integration, make_event())

        assert result.status == DeliveryStatus.FAILED
        stored = manager.get(integration.id)
        assert stored.status == IntegrationStatus.ERROR
        assert stored.last_error == "HTTP 500: oops"
        assert integration.status == IntegrationStatus.ERROR

    def test_severity_filter(self, notifier, integration, make_event):
        """Should skip events below the minimum severity."""
        integration.alert_filter = AlertFilter(min_severity=Severity.HIGH)
        manager = ExternalIntegrationManager(notifier_factory=lambda i: notifier)

        result = manager.deliver(integration, make_event(severity=Severity.MEDIUM))

        assert result.status == DeliveryStatus.SKIPPED
        assert result.detail == "filtered out"
        notifier.send.assert_not_called()

    def test_price_alert_filter(self, notifier, integration, make_event):
        """Should skip price alerts when excluded."""
        integration.alert_filter = AlertFilter(include_price_alerts=False)
        manager = ExternalIntegrationManager(notifier_factory=lambda i: notifier)

        event = make_event(kind=EventKind.PRICE_ALERT, category="price")
        assert manager.deliver(integration, event).status == DeliveryStatus.SKIPPED

    def test_category_filter(self, notifier, integration, make_event):
        """Should only pass listed categories."""
        integration.alert_filter = AlertFilter(categories=["gas"])
        manager = ExternalIntegrationManager(notifier_factory=lambda i: notifier)

        assert manager.accepts(integration, make_event(category="gas")) is True
        assert manager.accepts(integration, make_event(category="volume")) is False

    def test_disabled_skipped(self, notifier, integration, make_event):
        """Should not deliver to disabled integrations."""
        integration.enabled = False
        manager = ExternalIntegrationManager(notifier_factory=lambda i: notifier)

        result = manager.deliver(integration, make_event())
        assert result.detail == "integration disabled"

    def test_dispatch_isolates_failures(self, sample_discord_webhook_url, make_event):
        """Should deliver to every integration even when one fails."""
        failing = create_discord_integration("Broken", sample_discord_webhook_url)
        working = create_telegram_integration("Bot", "123:ABC", "42")

        def factory(integration: ExternalIntegration):
            notifier = MagicMock()
            if integration.type == IntegrationType.DISCORD:
                notifier.send.side_effect = RuntimeError("boom")
            else:
                notifier.send.return_value = DeliveryResult.delivered("telegram")
            return notifier

        manager = ExternalIntegrationManager(notifier_factory=factory)
        manager.save(failing)
        manager.save(working)

        results = manager.dispatch(make_event())

        assert [r.status for r in results] == [DeliveryStatus.FAILED, DeliveryStatus.DELIVERED]
        assert manager.get(failing.id).status == IntegrationStatus.ERROR
        assert manager.get(working.id).status == IntegrationStatus.CONNECTED

    def test_dispatch_only_selected_types(self, sample_discord_webhook_url, make_event):
        """Should deliver only to the integration types that were asked for."""
        discord = create_discord_integration("Team", sample_discord_webhook_url)
        telegram = create_telegram_integration("Bot", "123:ABC", "42")
        sent_to = []

        def factory(integration: ExternalIntegration):
            sent_to.append(integration.type.value)
            notifier = MagicMock()
            notifier.send.return_value = DeliveryResult.delivered(integration.type.value)
            return notifier

        manager = ExternalIntegrationManager(notifier_factory=factory)
        manager.save(discord)
        manager.save(telegram)

        results = manager.dispatch(make_event(), ["telegram"])

        assert sent_to == ["telegram"]
        assert [r.channel for r in results] == [f"telegram:{telegram.id}"]
        assert manager.get(discord.id).status == IntegrationStatus.PENDING

    def test_price_alert_severity_floor(self, notifier, integration, make_event):
        """Should hold price alerts to their own severity floor."""
        integration.alert_filter = AlertFilter(
            min_severity=Severity.LOW, price_alert_min_severity=Severity.HIGH
        )
        manager = ExternalIntegrationManager(notifier_factory=lambda i: notifier)

        price_medium = make_event(
            kind=EventKind.PRICE_ALERT, category="price", severity=Severity.MEDIUM
        )
        price_high = make_event(
            kind=EventKind.PRICE_ALERT, category="price", severity=Severity.HIGH
        )
        rule_medium = make_event(severity=Severity.MEDIUM)

        assert manager.accepts(integration, price_medium) is False
        assert manager.accepts(integration, price_high) is True
        assert manager.accepts(integration, rule_medium) is True
