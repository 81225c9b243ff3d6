"""
Notification router: fans alert events out to every enabled channel.
"""

import logging
from typing import Optional

from chainwatch.rules.types import AlertEvent, NotificationChannels
from .base import DeliveryResult, DeliveryStatus, Notifier
from .integrations import ExternalIntegrationManager

logger = logging.getLogger(__name__)


class NotificationRouter:
    """
    Delivers each event independently to in-app, sound, push and external
    channels.

    A failure on one channel is logged and reported as a FAILED result; the
    remaining channels still receive the event.
    """

    def __init__(
        self,
        in_app: Optional[Notifier] = None,
        sound: Optional[Notifier] = None,
        push: Optional[Notifier] = None,
        integrations: Optional[ExternalIntegrationManager] = None,
    ):
        self.in_app = in_app
        self.sound = sound
        self.push = push
        self.integrations = integrations

    def route(
        self, event: AlertEvent, channels: Optional[NotificationChannels] = None
    ) -> list[DeliveryResult]:
        """
        Deliver an event.

        Args:
            event: Event to deliver
            channels: Channel flags of the originating rule or alert;
                defaults to every local channel on and Discord and Telegram off

        Returns:
            One result per attempted channel or integration
        """
        channels = channels or NotificationChannels()
        results = []

        local = (
            ("in_app", channels.in_app, self.in_app),
            ("sound", channels.sound, self.sound),
            ("push", channels.push, self.push),
        )
        for name, enabled, notifier in local:
            if not enabled or notifier is None:
                continue
            results.append(self._send(name, notifier, event))

        if channels.external and self.integrations is not None:
            try:
                results.extend(self.integrations.dispatch(event, channels.external_types))
            except Exception as e:
                logger.exception("External dispatch failed")
                results.append(DeliveryResult.failed("external", str(e)))

        failed = [r for r in results if r.status == DeliveryStatus.FAILED]
        if failed:
            logger.warning(
                f"Event {event.id}: {len(failed)} of {len(results)} deliveries failed"
            )
        else:
            logger.debug(f"Event {event.id}: {len(results)} deliveries")

        return results

    def _send(self, name: str, notifier: Notifier, event: AlertEvent) -> DeliveryResult:
        try:
            return notifier.send(event)
        except Exception as e:
            logger.exception(f"Channel {name} failed")
            return DeliveryResult.failed(name, str(e))
