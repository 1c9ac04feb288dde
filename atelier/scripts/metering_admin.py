#!/usr/bin/env python3
"""
Metering admin commands.

Usage:
    python -m atelier.scripts.metering_admin sweep [--now 2026-02-01T00:00:00+00:00] [--limit 500]
    python -m atelier.scripts.metering_admin reconcile <user_id> [--fix]
    python -m atelier.scripts.metering_admin history <user_id> [--limit 20]

Meant for a scheduler (sweep) and for support staff (reconcile, history).
Prints one JSON document to stdout; exit code 1 when any sweep item failed
or reconciliation found drift that was not fixed.
"""
import argparse
import json
import sys
from datetime import datetime
from typing import List, Optional

from atelier.core.config import settings
from atelier.core.logging import configure_logging


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Atelier metering admin")
    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="Roll over every user whose period has ended")
    sweep.add_argument("--now", default=None, help="ISO timestamp to sweep at (default: now)")
    sweep.add_argument("--limit", type=int, default=None, help="Max users per run")

    reconcile = sub.add_parser("reconcile", help="Compare tokens_used with the usage log")
    reconcile.add_argument("user_id")
    reconcile.add_argument("--fix", action="store_true", help="Overwrite the counter on drift")

    history = sub.add_parser("history", help="Show recent usage events")
    history.add_argument("user_id")
    history.add_argument("--limit", type=int, default=20)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # stdout carries the JSON result; logs go to stderr.
    configure_logging(settings.ENV, stream=sys.stderr)

    if args.command == "sweep":
        from atelier.features.rollover.service import sweep_rollovers

        result = sweep_rollovers(now=_parse_now(args.now), limit=args.limit)
        print(json.dumps(result, indent=2))
        return 1 if result["failed"] else 0

    if args.command == "reconcile":
        from atelier.features.usage.service import reconcile_tokens_used

        result = reconcile_tokens_used(args.user_id, fix=args.fix)
        print(json.dumps(result, indent=2))
        return 1 if result["drift"] and not result["fixed"] else 0

    from atelier.features.usage.service import get_usage_history

    events = get_usage_history(args.user_id, limit=args.limit)
    print(json.dumps([e.model_dump(mode="json") for e in events], indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
