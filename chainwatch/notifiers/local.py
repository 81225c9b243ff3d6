"""
Local notification channels: in-app inbox, audible cue and platform push.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from chainwatch.history import AlertHistory
from chainwatch.rules.types import AlertEvent, EventKind
from .base import DeliveryResult, Notifier

logger = logging.getLogger(__name__)

SOUND_TYPES = ("default", "transaction", "price", "system", "volume")

UnreadListener = Callable[[int, AlertEvent], None]
SoundPlayer = Callable[[str, float], None]
PushSender = Callable[[str, str, Optional[str]], None]


class InAppNotifier(Notifier):
    """
    In-process notification inbox.

    Events are already in the history when routed here; this channel
    recomputes the unread count and tells listeners about it.
    """

    channel = "in_app"

    def __init__(self, history: AlertHistory):
        self.history = history
        self._listeners: list[UnreadListener] = []

    def subscribe(self, listener: UnreadListener) -> Callable[[], None]:
        """
        Register a listener called with (unread_count, event).

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def send(self, event: AlertEvent) -> DeliveryResult:
        count = self.history.unread_count()
        for listener in list(self._listeners):
            try:
                listener(count, event)
            except Exception as e:
                logger.warning(f"Unread listener failed: {e}")
        return DeliveryResult.delivered(self.channel, f"{count} unread")


@dataclass
class SoundSettings:
    """Audible cue preferences."""

    enabled: bool = True
    volume: float = 0.7
    quiet_start: int = 22  # hour, inclusive
    quiet_end: int = 8  # hour, exclusive
    enabled_sounds: dict[str, bool] = field(
        default_factory=lambda: {sound: True for sound in SOUND_TYPES}
    )

    def is_quiet(self, when: datetime) -> bool:
        """Whether `when` falls inside quiet hours; the range may wrap past midnight."""
        if self.quiet_start == self.quiet_end:
            return False
        hour = when.hour
        if self.quiet_start < self.quiet_end:
            return self.quiet_start <= hour < self.quiet_end
        return hour >= self.quiet_start or hour < self.quiet_end


def sound_type_for(event: AlertEvent) -> str:
    """Pick the sound for an event."""
    if event.kind == EventKind.PRICE_ALERT:
        return "price"
    if event.kind == EventKind.SYSTEM:
        return "system"
    if event.category == "volume":
        return "volume"
    return "default"


def _log_sound(sound: str, volume: float) -> None:
    logger.info(f"Playing {sound} sound at volume {volume:.2f}")


class SoundNotifier(Notifier):
    """Plays an audible cue keyed by event category."""

    channel = "sound"

    def __init__(
        self,
        settings: Optional[SoundSettings] = None,
        player: Optional[SoundPlayer] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize sound notifier.

        Args:
            settings: Sound preferences
            player: Callable taking (sound_type, volume); defaults to logging
            clock: Time source for quiet hours
        """
        self.settings = settings or SoundSettings()
        self.player = player or _log_sound
        self.clock = clock

    def send(self, event: AlertEvent) -> DeliveryResult:
        sound = sound_type_for(event)

        if not self.settings.enabled:
            return DeliveryResult.skipped(self.channel, "sound disabled")
        if not self.settings.enabled_sounds.get(sound, True):
            return DeliveryResult.skipped(self.channel, f"{sound} sound disabled")
        if self.settings.is_quiet(self.clock()):
            return DeliveryResult.skipped(self.channel, "quiet hours")

        try:
            self.player(sound, self.settings.volume)
        except Exception as e:
            return DeliveryResult.failed(self.channel, str(e))
        return DeliveryResult.delivered(self.channel, sound)


def _log_push(title: str, body: str, link: Optional[str]) -> None:
    logger.info(f"Push notification: {title} - {body}")


class PushNotifier(Notifier):
    """Platform-level push notification, only when permission was granted."""

    channel = "push"

    def __init__(
        self,
        permission_granted: bool = False,
        sender: Optional[PushSender] = None,
    ):
        """
        Initialize push notifier.

        Args:
            permission_granted: Whether the platform granted notification permission
            sender: Callable taking (title, body, link); defaults to logging
        """
        self.permission_granted = permission_granted
        self.sender = sender or _log_push

    def send(self, event: AlertEvent) -> DeliveryResult:
        if not self.permission_granted:
            return DeliveryResult.skipped(self.channel, "permission not granted")

        link = next((a.href for a in event.actions if a.href), None)
        try:
            self.sender(event.title, event.message, link)
        except Exception as e:
            return DeliveryResult.failed(self.channel, str(e))
        return DeliveryResult.delivered(self.channel)
