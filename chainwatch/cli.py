"""
CLI commands for ChainWatch.
"""

import argparse
import json
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from chainwatch.analytics.engine import TIMEFRAMES as ANALYTICS_TIMEFRAMES, AnalyticsEngine
from chainwatch.data.recent import RecentSourceTracker
from chainwatch.database.connection import Database
from chainwatch.database.models import AlertFilter, IntegrationType
from chainwatch.database.repository import (
    AlertRuleRepository,
    IntegrationRepository,
    NotificationRepository,
    PriceAlertRepository,
    RecentSourceRepository,
)
from chainwatch.history import AlertHistory, TriggerArchive
from chainwatch.notifiers.integrations import (
    ExternalIntegrationManager,
    SaveResult,
    create_discord_integration,
    create_telegram_integration,
)
from chainwatch.rules.conditions import parse_condition
from chainwatch.rules.formatting import condition_label
from chainwatch.rules.registry import RuleRegistry
from chainwatch.rules.severity import classify_severity
from chainwatch.rules.types import (
    TIMEFRAMES,
    AlertRule,
    ConditionType,
    NotificationChannels,
    PriceAlert,
    Severity,
    condition_params,
)


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _registry(db: Database) -> RuleRegistry:
    return RuleRegistry(AlertRuleRepository(db), PriceAlertRepository(db))


def _history(db: Database) -> AlertHistory:
    return AlertHistory(repository=NotificationRepository(db))


def add_price_alert(
    db: Database,
    source_id: str,
    instrument: str,
    condition_type: str,
    params: dict[str, Any],
    timeframe: str = "24h",
    repeatable: bool = False,
    name: Optional[str] = None,
    discord: bool = False,
    telegram: bool = False,
) -> PriceAlert:
    """
    Create and store a price alert.

    Raises:
        ValueError: If the condition or timeframe is invalid
    """
    condition = parse_condition(condition_type, params)
    alert = PriceAlert.create(
        source_id=source_id,
        instrument=instrument.upper(),
        condition=condition,
        timeframe=timeframe,
        repeatable=repeatable,
        name=name,
        channels=NotificationChannels(discord=discord, telegram=telegram),
    )
    return _registry(db).save_alert(alert)


def add_rule(
    db: Database,
    rule_id: str,
    name: str,
    source_ids: list[str],
    categories: list[str],
    threshold: float,
    minimum_volume: float = 0.0,
    timeframes: Optional[list[str]] = None,
    severity: str = "medium",
    discord: bool = False,
    telegram: bool = False,
) -> AlertRule:
    """Create or replace an alert rule."""
    for timeframe in timeframes or []:
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")
    rule = AlertRule(
        id=rule_id,
        name=name,
        source_ids=source_ids,
        categories=categories,
        threshold=threshold,
        minimum_volume=minimum_volume,
        timeframes=list(timeframes or []),
        severity=Severity.parse(severity),
        channels=NotificationChannels(discord=discord, telegram=telegram),
    )
    return _registry(db).save_rule(rule)


def add_integration(db: Database, args: argparse.Namespace) -> SaveResult:
    """Validate and store a Discord or Telegram integration."""
    alert_filter = AlertFilter(
        min_severity=Severity.parse(args.min_severity),
        categories=_split(args.categories),
        include_price_alerts=not args.no_price_alerts,
        price_alert_min_severity=Severity.parse(args.price_min_severity),
        include_price_data=not args.no_price_data,
    )

    if args.type == IntegrationType.DISCORD.value:
        integration = create_discord_integration(
            args.name, args.webhook_url or "", alert_filter=alert_filter
        )
    else:
        integration = create_telegram_integration(
            args.name, args.bot_token or "", args.chat_id or "", alert_filter=alert_filter
        )

    return ExternalIntegrationManager(IntegrationRepository(db)).save(integration)


def run_analytics(db: Database, timeframe: str) -> dict[str, Any]:
    """Analytics over the persisted notification history."""
    engine = AnalyticsEngine(_history(db), TriggerArchive())
    return {
        "timeframe": timeframe,
        "summary": engine.summary_metrics(timeframe),
        "frequency": engine.frequency(timeframe),
        "sources": engine.source_distribution(timeframe),
        "anomalies": engine.detect_anomalies(timeframe),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ChainWatch CLI")
    parser.add_argument("--db", default="data/chainwatch.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Price alert commands
    alerts_parser = subparsers.add_parser("alerts", help="Price alert management")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")

    add_alert_parser = alerts_subparsers.add_parser("add", help="Add price alert")
    add_alert_parser.add_argument("--source", required=True, help="Source ID")
    add_alert_parser.add_argument("--instrument", required=True, help="Instrument symbol")
    add_alert_parser.add_argument(
        "--condition", required=True, choices=[c.value for c in ConditionType]
    )
    add_alert_parser.add_argument("--target", type=float, help="Target value")
    add_alert_parser.add_argument("--percentage", type=float, help="Percent change")
    add_alert_parser.add_argument("--min", type=float, help="Range minimum")
    add_alert_parser.add_argument("--max", type=float, help="Range maximum")
    add_alert_parser.add_argument("--threshold", type=float, help="Volatility threshold")
    add_alert_parser.add_argument("--timeframe", default="24h", choices=TIMEFRAMES)
    add_alert_parser.add_argument("--repeatable", action="store_true")
    add_alert_parser.add_argument("--name", help="Display name")
    add_alert_parser.add_argument("--discord", action="store_true", help="Also notify Discord")
    add_alert_parser.add_argument("--telegram", action="store_true", help="Also notify Telegram")

    list_alerts_parser = alerts_subparsers.add_parser("list", help="List price alerts")
    list_alerts_parser.add_argument("--source", help="Source ID filter")

    delete_alert_parser = alerts_subparsers.add_parser("delete", help="Delete price alert")
    delete_alert_parser.add_argument("id")

    reset_alert_parser = alerts_subparsers.add_parser(
        "reset", help="Re-arm a fired one-shot alert"
    )
    reset_alert_parser.add_argument("id")

    # Rule commands
    rules_parser = subparsers.add_parser("rules", help="Alert rule management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add or replace rule")
    add_rule_parser.add_argument("--id", required=True, help="Rule ID")
    add_rule_parser.add_argument("--name", required=True, help="Rule name")
    add_rule_parser.add_argument("--sources", help="Comma-separated source IDs (default all)")
    add_rule_parser.add_argument(
        "--categories", help="Comma-separated categories (default all)"
    )
    add_rule_parser.add_argument("--threshold", type=float, default=5.0)
    add_rule_parser.add_argument("--min-volume", type=float, default=0.0)
    add_rule_parser.add_argument("--timeframes", help="Comma-separated timeframes")
    add_rule_parser.add_argument(
        "--severity", default="medium", choices=[s.label for s in Severity]
    )
    add_rule_parser.add_argument("--discord", action="store_true")
    add_rule_parser.add_argument("--telegram", action="store_true")

    rules_subparsers.add_parser("list", help="List rules")

    delete_rule_parser = rules_subparsers.add_parser("delete", help="Delete rule")
    delete_rule_parser.add_argument("id")

    # Integration commands
    integrations_parser = subparsers.add_parser(
        "integrations", help="External integration management"
    )
    integrations_subparsers = integrations_parser.add_subparsers(dest="action")

    add_integration_parser = integrations_subparsers.add_parser("add", help="Add integration")
    add_integration_parser.add_argument(
        "type", choices=[t.value for t in IntegrationType]
    )
    add_integration_parser.add_argument("--name", required=True)
    add_integration_parser.add_argument("--webhook-url", help="Discord webhook URL")
    add_integration_parser.add_argument("--bot-token", help="Telegram bot token")
    add_integration_parser.add_argument("--chat-id", help="Telegram chat ID")
    add_integration_parser.add_argument(
        "--min-severity", default="medium", choices=[s.label for s in Severity]
    )
    add_integration_parser.add_argument("--categories", help="Comma-separated categories")
    add_integration_parser.add_argument("--no-price-alerts", action="store_true")
    add_integration_parser.add_argument(
        "--price-min-severity",
        default="medium",
        choices=[s.label for s in Severity],
        help="Minimum severity for price alerts",
    )
    add_integration_parser.add_argument("--no-price-data", action="store_true")

    list_integrations_parser = integrations_subparsers.add_parser(
        "list", help="List integrations"
    )
    list_integrations_parser.add_argument(
        "--type", choices=[t.value for t in IntegrationType]
    )

    test_integration_parser = integrations_subparsers.add_parser(
        "test", help="Send a test message"
    )
    test_integration_parser.add_argument("id")

    delete_integration_parser = integrations_subparsers.add_parser(
        "delete", help="Delete integration"
    )
    delete_integration_parser.add_argument("id")

    # History commands
    history_parser = subparsers.add_parser("history", help="Notification history")
    history_subparsers = history_parser.add_subparsers(dest="action")

    list_history_parser = history_subparsers.add_parser("list", help="List notifications")
    list_history_parser.add_argument(
        "--status", default="all", choices=["all", "unread", "read", "dismissed"]
    )
    list_history_parser.add_argument(
        "--kind", default="all", choices=["all", "rule", "price-alert", "system"]
    )
    list_history_parser.add_argument("--limit", type=int)

    read_history_parser = history_subparsers.add_parser("read", help="Mark as read")
    read_history_parser.add_argument("id", nargs="?")
    read_history_parser.add_argument("--all", action="store_true", help="Mark all read")

    dismiss_history_parser = history_subparsers.add_parser("dismiss", help="Dismiss")
    dismiss_history_parser.add_argument("id")

    history_subparsers.add_parser("clear", help="Clear all notifications")

    # Analytics
    analytics_parser = subparsers.add_parser("analytics", help="Alert analytics")
    analytics_parser.add_argument(
        "--timeframe", default="7d", choices=list(ANALYTICS_TIMEFRAMES)
    )

    # Sources
    sources_parser = subparsers.add_parser("sources", help="Source usage")
    sources_subparsers = sources_parser.add_subparsers(dest="action")
    recent_parser = sources_subparsers.add_parser("recent", help="Recently used sources")
    recent_parser.add_argument(
        "--frequent", action="store_true", help="Order by use count"
    )
    use_parser = sources_subparsers.add_parser("use", help="Record use of a source")
    use_parser.add_argument("id")

    return parser


def _handle_alerts(db: Database, args: argparse.Namespace) -> None:
    registry = _registry(db)

    if args.action == "add":
        params = {
            key: value
            for key, value in (
                ("target", args.target),
                ("percentage", args.percentage),
                ("min", args.min),
                ("max", args.max),
                ("threshold", args.threshold),
            )
            if value is not None
        }
        alert = add_price_alert(
            db,
            source_id=args.source,
            instrument=args.instrument,
            condition_type=args.condition,
            params=params,
            timeframe=args.timeframe,
            repeatable=args.repeatable,
            name=args.name,
            discord=args.discord,
            telegram=args.telegram,
        )
        print(f"Created price alert with ID: {alert.id}")
    elif args.action == "list":
        for alert in registry.list_alerts(source_id=args.source):
            state = "fired" if alert.is_terminal else ("on" if alert.enabled else "off")
            severity = classify_severity(alert.condition).label
            print(
                f"{alert.id}: {alert.instrument}@{alert.source_id} "
                f"{condition_label(alert.condition.type)} {condition_params(alert.condition)} "
                f"[{severity}, {state}]"
            )
    elif args.action == "delete":
        print("Deleted" if registry.delete_alert(args.id) else f"Not found: {args.id}")
    elif args.action == "reset":
        print("Reset" if registry.reset_alert(args.id) else f"Not found: {args.id}")


def _handle_rules(db: Database, args: argparse.Namespace) -> None:
    registry = _registry(db)

    if args.action == "add":
        rule = add_rule(
            db,
            rule_id=args.id,
            name=args.name,
            source_ids=_split(args.sources),
            categories=_split(args.categories),
            threshold=args.threshold,
            minimum_volume=args.min_volume,
            timeframes=_split(args.timeframes),
            severity=args.severity,
            discord=args.discord,
            telegram=args.telegram,
        )
        print(f"Saved rule with ID: {rule.id}")
    elif args.action == "list":
        for rule in registry.list_rules():
            sources = ",".join(rule.source_ids) or "all"
            categories = ",".join(rule.categories) or "all"
            print(
                f"{rule.id}: {rule.name} (>= {rule.threshold}% on {categories}, "
                f"sources {sources}, {rule.severity.label}, "
                f"{'on' if rule.enabled else 'off'})"
            )
    elif args.action == "delete":
        print("Deleted" if registry.delete_rule(args.id) else f"Not found: {args.id}")


def _handle_integrations(db: Database, args: argparse.Namespace) -> None:
    manager = ExternalIntegrationManager(IntegrationRepository(db))

    if args.action == "add":
        result = add_integration(db, args)
        if result.success:
            print(f"Created integration with ID: {result.integration.id}")
        else:
            print(f"Rejected: {result.message}")
    elif args.action == "list":
        for integration in manager.list_all(args.type):
            print(
                f"{integration.id}: {integration.name} ({integration.type.value}) "
                f"{integration.status.value}"
            )
    elif args.action == "test":
        integration = manager.get(args.id)
        if integration is None:
            print(f"Not found: {args.id}")
            return
        result = manager.test_connection(integration)
        print(f"{'OK' if result.success else 'FAILED'}: {result.message}")
    elif args.action == "delete":
        print("Deleted" if manager.delete(args.id) else f"Not found: {args.id}")


def _handle_history(db: Database, args: argparse.Namespace) -> None:
    history = _history(db)

    if args.action == "list":
        for event in history.list_events(status=args.status, kind=args.kind, limit=args.limit):
            print(
                f"{event.id} [{event.status.value}] {event.timestamp:%Y-%m-%d %H:%M:%S} "
                f"{event.severity.label.upper()} {event.title}: {event.message}"
            )
        print(f"Unread: {history.unread_count()}")
    elif args.action == "read":
        if args.all:
            print(f"Marked {history.mark_all_read()} as read")
        elif args.id:
            print("Marked read" if history.mark_read(args.id) else f"Not found: {args.id}")
        else:
            print("Give a notification ID or --all")
    elif args.action == "dismiss":
        print("Dismissed" if history.dismiss(args.id) else f"Not found: {args.id}")
    elif args.action == "clear":
        history.clear()
        print("History cleared")


def main():
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    try:
        if args.command == "alerts":
            _handle_alerts(db, args)
        elif args.command == "rules":
            _handle_rules(db, args)
        elif args.command == "integrations":
            _handle_integrations(db, args)
        elif args.command == "history":
            _handle_history(db, args)
        elif args.command == "analytics":
            print(json.dumps(run_analytics(db, args.timeframe), indent=2, default=str))
        elif args.command == "sources":
            tracker = RecentSourceTracker(RecentSourceRepository(db))
            if args.action == "use":
                record = tracker.touch(args.id)
                print(f"{record.source_id}: used {record.use_count} times")
            else:
                items = tracker.most_frequent() if args.frequent else tracker.most_recent()
                for item in items:
                    print(f"{item.source_id}: {item.use_count} uses, last {item.last_used_at:%Y-%m-%d %H:%M}")
        else:
            parser.print_help()
    except ValueError as e:
        parser.error(str(e))
    finally:
        db.close()


if __name__ == "__main__":
    main()
