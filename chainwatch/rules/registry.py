"""
Rule registry: CRUD over alert rules and price alerts.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Optional

from chainwatch.database.repository import AlertRuleRepository, PriceAlertRepository
from .types import AlertRule, PriceAlert

logger = logging.getLogger(__name__)


class RuleRegistry:
    """
    Stores alert rules and price alerts keyed by id.

    The two families are separate namespaces, so an alert rule and a price
    alert may share an id. Every read returns copies.
    """

    def __init__(
        self,
        rule_repository: Optional[AlertRuleRepository] = None,
        alert_repository: Optional[PriceAlertRepository] = None,
    ):
        """
        Initialize registry.

        Args:
            rule_repository: Optional persistence for alert rules
            alert_repository: Optional persistence for price alerts
        """
        self.rule_repository = rule_repository
        self.alert_repository = alert_repository
        self._lock = threading.RLock()
        self._rules: dict[str, AlertRule] = {}
        self._alerts: dict[str, PriceAlert] = {}

        if rule_repository is not None:
            self._rules = {rule.id: rule for rule in rule_repository.load()}
        if alert_repository is not None:
            self._alerts = {alert.id: alert for alert in alert_repository.load()}

    # Alert rules

    def save_rule(self, rule: AlertRule) -> AlertRule:
        """Insert or replace a rule; a replaced rule keeps its position."""
        with self._lock:
            self._rules[rule.id] = copy.deepcopy(rule)
            self._persist_rules()
        return copy.deepcopy(rule)

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return copy.deepcopy(rule) if rule else None

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            if rule_id not in self._rules:
                return False
            del self._rules[rule_id]
            self._persist_rules()
            return True

    def list_rules(
        self,
        source_id: Optional[str] = None,
        category: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> list[AlertRule]:
        """
        List rules matching every given filter.

        An empty source or category set on a rule means it applies to all, so
        such a rule matches any source or category filter.

        Args:
            source_id: Only rules targeting this source
            category: Only rules covering this category
            enabled: Only rules with this enabled state

        Returns:
            Copies of matching rules in insertion order
        """
        with self._lock:
            rules = list(self._rules.values())

        if source_id is not None:
            rules = [r for r in rules if not r.source_ids or source_id in r.source_ids]
        if category is not None:
            rules = [r for r in rules if not r.categories or category in r.categories]
        if enabled is not None:
            rules = [r for r in rules if r.enabled == enabled]

        return copy.deepcopy(rules)

    # Price alerts

    def save_alert(self, alert: PriceAlert) -> PriceAlert:
        """Insert or replace a price alert; a replaced alert keeps its position."""
        with self._lock:
            self._alerts[alert.id] = copy.deepcopy(alert)
            self._persist_alerts()
        return copy.deepcopy(alert)

    def get_alert(self, alert_id: str) -> Optional[PriceAlert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return copy.deepcopy(alert) if alert else None

    def delete_alert(self, alert_id: str) -> bool:
        with self._lock:
            if alert_id not in self._alerts:
                return False
            del self._alerts[alert_id]
            self._persist_alerts()
            return True

    def list_alerts(
        self,
        source_id: Optional[str] = None,
        instrument: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> list[PriceAlert]:
        """List price alerts matching every given filter."""
        with self._lock:
            alerts = list(self._alerts.values())

        if source_id is not None:
            alerts = [a for a in alerts if a.source_id == source_id]
        if instrument is not None:
            wanted = instrument.upper()
            alerts = [a for a in alerts if a.instrument.upper() == wanted]
        if enabled is not None:
            alerts = [a for a in alerts if a.enabled == enabled]

        return copy.deepcopy(alerts)

    def mark_triggered(self, alert_id: str, when: datetime) -> bool:
        """
        Record that a price alert fired.

        A non-repeatable alert that already fired keeps its first
        trigger time.

        Returns:
            True if the trigger time was recorded
        """
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.is_terminal:
                return False
            alert.last_triggered_at = when
            self._persist_alerts()
            return True

    def reset_alert(self, alert_id: str) -> bool:
        """Clear the trigger state of a price alert so it can fire again."""
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.reset()
            self._persist_alerts()
            return True

    def _persist_rules(self) -> None:
        if self.rule_repository is None:
            return
        try:
            self.rule_repository.save(list(self._rules.values()))
        except Exception as e:
            logger.warning(f"Failed to persist alert rules: {e}")

    def _persist_alerts(self) -> None:
        if self.alert_repository is None:
            return
        try:
            self.alert_repository.save(list(self._alerts.values()))
        except Exception as e:
            logger.warning(f"Failed to persist price alerts: {e}")
