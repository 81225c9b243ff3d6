"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta

import pytest

from chainwatch.data.snapshots import MetricSource
from chainwatch.database.connection import Database
from chainwatch.rules.types import AlertEvent, EventKind, Severity


class FakeClock:
    """Settable clock for deterministic timestamps."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock starting at a fixed daytime moment."""
    return FakeClock(datetime(2024, 3, 15, 12, 0, 0))


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def sources():
    """Two configured sources."""
    return {
        "1": MetricSource(
            id="1",
            name="Ethereum",
            categories=("price", "volume", "gas"),
            explorer_url="https://etherscan.io",
            instruments=("ETH", "USDC"),
        ),
        "137": MetricSource(
            id="137",
            name="Polygon",
            categories=("price", "volume"),
            instruments=("MATIC",),
        ),
    }


@pytest.fixture
def sample_discord_webhook_url():
    """Sample Discord webhook URL for testing."""
    return "https://discord.com/api/webhooks/123456789/abcdefghijklmnop"


@pytest.fixture
def make_event():
    """Factory for alert events."""

    def _make(
        kind: EventKind = EventKind.RULE,
        category: str = "volume",
        severity: Severity = Severity.MEDIUM,
        timestamp: datetime = None,
        source_id: str = "1",
        **kwargs,
    ) -> AlertEvent:
        return AlertEvent(
            kind=kind,
            category=category,
            title=kwargs.pop("title", "INCREASE ALERT: Ethereum"),
            message=kwargs.pop("message", "Ethereum volume up 6.0% to 1,060.00 (24h)"),
            severity=severity,
            timestamp=timestamp or datetime(2024, 3, 15, 12, 0, 0),
            source_id=source_id,
            **kwargs,
        )

    return _make
