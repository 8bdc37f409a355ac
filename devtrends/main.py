"""
Operator command line for DevTrends AI.

Usage:
    devtrends init-db                     # Create the SQLite tables
    devtrends init-prompts                # Seed the default prompt versions
    devtrends costs --days 7              # Print the cost summary as JSON
    devtrends feedback --days 30          # Print the feedback analysis as JSON
    devtrends monitoring                  # Print the 24h health report as JSON
    devtrends purge-windows               # Drop closed rate-limit windows
    devtrends serve --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from devtrends.api import build_container, create_app
from devtrends.common.exceptions import BaseError
from devtrends.common.logging import configure_logging
from devtrends.config import load_settings
from devtrends.services import purge_expired_windows

logger = logging.getLogger(__name__)


def _print_json(data: dict) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devtrends",
        description="DevTrends AI orchestration: operator commands and API server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    devtrends init-db
    devtrends init-prompts
    devtrends costs --days 7
    devtrends serve --port 8000
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")
    sub.add_parser("init-prompts", help="Seed default prompts (existing keys are kept)")

    costs = sub.add_parser("costs", help="Print spend, breakdowns and budget alerts")
    costs.add_argument("--days", type=int, default=30, help="Window in days (default: 30)")

    feedback = sub.add_parser("feedback", help="Print the feedback analysis")
    feedback.add_argument("--days", type=int, default=30, help="Window in days (default: 30)")

    sub.add_parser("monitoring", help="Print the last 24h health report and alerts")
    sub.add_parser("purge-windows", help="Delete expired rate-limit windows")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = load_settings()
        configure_logging(settings.log_level, settings.json_logs)

        if args.command == "serve":
            import uvicorn

            container = build_container(settings)
            uvicorn.run(create_app(container), host=args.host, port=args.port)
            return 0

        container = build_container(settings)

        if args.command == "init-db":
            print(f"Database ready: {settings.database_path}")
        elif args.command == "init-prompts":
            created = container.prompts.initialize_default_prompts()
            if created:
                print(f"Created prompts: {', '.join(created)}")
            else:
                print("All default prompts already exist")
        elif args.command == "costs":
            _print_json(container.costs.calculate_cost_summary(args.days).to_json_dict())
        elif args.command == "feedback":
            _print_json(container.feedback.analyze_feedback(args.days).to_json_dict())
        elif args.command == "monitoring":
            _print_json(container.monitor.report().to_json_dict())
        elif args.command == "purge-windows":
            removed = purge_expired_windows(container.rate_limits)
            print(f"Removed {removed} expired windows")
    except BaseError as e:
        logger.error("Command %s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
