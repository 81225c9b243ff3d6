"""
Rule registry tests.
"""

from datetime import datetime

from chainwatch.database.repository import AlertRuleRepository, PriceAlertRepository
from chainwatch.rules.registry import RuleRegistry
from chainwatch.rules.types import (
    AboveCondition,
    AlertRule,
    NotificationChannels,
    PriceAlert,
    PriceRangeCondition,
    Severity,
)


def _rule(rule_id: str = "rule-1", **kwargs) -> AlertRule:
    defaults = {
        "name": "Volume moves",
        "source_ids": ["1"],
        "categories": ["volume"],
        "threshold": 5.0,
        "severity": Severity.HIGH,
    }
    defaults.update(kwargs)
    return AlertRule(id=rule_id, **defaults)


def _alert(alert_id: str = "alert-1", **kwargs) -> PriceAlert:
    defaults = {
        "source_id": "1",
        "instrument": "ETH",
        "condition": AboveCondition(target=3700),
    }
    defaults.update(kwargs)
    return PriceAlert(id=alert_id, **defaults)


class TestRuleCrud:
    """Test alert rule CRUD."""

    def test_save_then_get_round_trip(self):
        """Should return a deep-equal copy of the saved rule."""
        registry = RuleRegistry()
        rule = _rule(channels=NotificationChannels(discord=True), timeframes=["24h"])
        registry.save_rule(rule)

        assert registry.get_rule(rule.id) == rule

    def test_delete_then_get(self):
        """Should report not-found after delete."""
        registry = RuleRegistry()
        registry.save_rule(_rule())

        assert registry.delete_rule("rule-1") is True
        assert registry.get_rule("rule-1") is None
        assert registry.delete_rule("rule-1") is False

    def test_upsert_keeps_position(self):
        """Should replace in place and append new ids."""
        registry = RuleRegistry()
        registry.save_rule(_rule("a"))
        registry.save_rule(_rule("b"))
        registry.save_rule(_rule("a", name="renamed"))

        rules = registry.list_rules()
        assert [r.id for r in rules] == ["a", "b"]
        assert rules[0].name == "renamed"

    def test_returned_rules_are_copies(self):
        """Should not let callers mutate stored rules."""
        registry = RuleRegistry()
        rule = _rule()
        registry.save_rule(rule)
        rule.categories.append("gas")

        listed = registry.list_rules()[0]
        listed.source_ids.append("999")

        assert registry.get_rule("rule-1").categories == ["volume"]
        assert registry.get_rule("rule-1").source_ids == ["1"]

    def test_query_filters(self):
        """Should filter by source, category and enabled state."""
        registry = RuleRegistry()
        registry.save_rule(_rule("eth-volume"))
        registry.save_rule(_rule("all-sources", source_ids=[], categories=["gas"]))
        registry.save_rule(_rule("disabled", enabled=False, categories=[]))

        assert {r.id for r in registry.list_rules(source_id="137")} == {"all-sources"}
        assert {r.id for r in registry.list_rules(category="volume")} == {
            "eth-volume",
            "disabled",
        }
        assert {r.id for r in registry.list_rules(enabled=False)} == {"disabled"}


class TestPriceAlertCrud:
    """Test price alert CRUD."""

    def test_round_trip(self):
        """Should return a deep-equal copy of the saved alert."""
        registry = RuleRegistry()
        alert = _alert(condition=PriceRangeCondition(min_value=1, max_value=2))
        registry.save_alert(alert)
        assert registry.get_alert(alert.id) == alert

    def test_shared_ids_across_families(self):
        """Should keep rule and alert namespaces separate."""
        registry = RuleRegistry()
        registry.save_rule(_rule("shared"))
        registry.save_alert(_alert("shared"))

        assert registry.delete_rule("shared") is True
        assert registry.get_alert("shared") is not None

    def test_list_by_instrument_case_insensitive(self):
        """Should match instruments regardless of case."""
        registry = RuleRegistry()
        registry.save_alert(_alert("a", instrument="ETH"))
        registry.save_alert(_alert("b", instrument="USDC"))

        assert [a.id for a in registry.list_alerts(instrument="eth")] == ["a"]

    def test_mark_triggered_once_for_one_shot(self):
        """Should keep the first trigger time of a non-repeatable alert."""
        registry = RuleRegistry()
        registry.save_alert(_alert())
        first = datetime(2024, 1, 1, 10, 0)

        assert registry.mark_triggered("alert-1", first) is True
        assert registry.mark_triggered("alert-1", datetime(2024, 1, 1, 11, 0)) is False
        assert registry.get_alert("alert-1").last_triggered_at == first

    def test_reset_rearms_alert(self):
        """Should clear the terminal state."""
        registry = RuleRegistry()
        registry.save_alert(_alert())
        registry.mark_triggered("alert-1", datetime(2024, 1, 1))

        assert registry.reset_alert("alert-1") is True
        assert registry.get_alert("alert-1").is_terminal is False

    def test_create_factory_defaults(self):
        """Should build an enabled, one-shot alert with a generated id."""
        alert = PriceAlert.create("1", "ETH", AboveCondition(target=1))
        assert alert.id.startswith("price-alert-")
        assert alert.timeframe == "24h"
        assert alert.repeatable is False
        assert alert.enabled is True
        assert alert.channels == NotificationChannels()


class TestRegistryPersistence:
    """Test write-through persistence."""

    def test_reload_from_repositories(self, db):
        """Should reload rules and alerts saved earlier."""
        registry = RuleRegistry(AlertRuleRepository(db), PriceAlertRepository(db))
        rule = _rule()
        alert = _alert()
        registry.save_rule(rule)
        registry.save_alert(alert)
        registry.mark_triggered(alert.id, datetime(2024, 2, 1, 8, 30))

        reloaded = RuleRegistry(AlertRuleRepository(db), PriceAlertRepository(db))
        assert reloaded.get_rule(rule.id) == rule
        stored = reloaded.get_alert(alert.id)
        assert stored.condition == AboveCondition(target=3700.0)
        assert stored.last_triggered_at == datetime(2024, 2, 1, 8, 30)
        assert stored.is_terminal is True

    def test_corrupt_storage_treated_as_empty(self, db):
        """Should start empty when stored JSON is corrupt."""
        repo = AlertRuleRepository(db)
        repo.kv.set(repo.key, "{not json")

        registry = RuleRegistry(rule_repository=repo)
        assert registry.list_rules() == []
