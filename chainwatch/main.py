"""
Service entry point.
"""

import logging
import signal

from dotenv import load_dotenv

load_dotenv()

from chainwatch.app import ChainWatchApp
from chainwatch.config import load_config
from chainwatch.database.connection import Database

logger = logging.getLogger(__name__)


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="ChainWatch Alert Service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run without sending to external integrations",
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single refresh tick and exit"
    )

    args = parser.parse_args()

    # Load config
    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.log_level
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.storage.path)
    db.initialize()

    app = ChainWatchApp(config=config, db=db, deliver_external=not args.dry_run)

    if args.dry_run:
        logger.info("Dry run mode - external integrations will not be notified")

    if args.once:
        events = app.run_tick()
        app.run_analytics()
        logger.info(f"Single tick complete: {len(events)} alerts")
        db.close()
        return

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        app.scheduler.token.cancel()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    app.start()
    try:
        app.scheduler.wait()
    finally:
        app.close()


if __name__ == "__main__":
    main()
