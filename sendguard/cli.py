"""
sendguard CLI - operator controls for the safety gate

Usage:
    sendguard init-db                              Create the safety tables
    sendguard kill-switch activate --reason "..."  Halt all sends
    sendguard kill-switch deactivate               Resume sends
    sendguard status                               Show kill switch and ledger summary
    sendguard events [--limit N]                   Show recent system events
"""

import argparse
import json
import sys
from pathlib import Path

from sendguard.clock import SystemClock
from sendguard.config import get_settings
from sendguard.logging_utils import setup_logging
from sendguard.storage import (
    KILL_SWITCH_FLAG,
    SafetyStoreError,
    check_db_health,
    create_db_engine,
    get_flag,
    get_ledger_stats,
    init_db,
    list_system_events,
    make_session_factory,
    session_scope,
    set_kill_switch,
)


def _session_factory(settings):
    Path(settings.DATA_DIR).mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    return make_session_factory(engine)


def cmd_init_db(args):
    """Create the safety tables."""
    settings = get_settings()
    session_factory = _session_factory(settings)
    if not check_db_health(session_factory):
        print("❌ Database schema check failed")
        return 1
    print(f"✅ Safety database ready: {settings.DATABASE_URL}")
    return 0


def cmd_kill_switch(args):
    """Activate or deactivate the persisted kill switch."""
    settings = get_settings()
    session_factory = _session_factory(settings)
    activate = args.action == "activate"
    with session_scope(session_factory) as db:
        set_kill_switch(db, activate, args.reason if activate else None, SystemClock().now_ms(), "cli")

    if activate:
        print(f"🚨 Kill switch ACTIVATED - all message sending stopped ({args.reason})")
    else:
        print("✅ Kill switch deactivated - message sending allowed")
        if settings.KILL_SWITCH:
            print("⚠️  KILL_SWITCH is still set in the environment; sends remain blocked")
    return 0


def cmd_status(args):
    """Print kill switch state and ledger summary as JSON."""
    settings = get_settings()
    session_factory = _session_factory(settings)
    with session_scope(session_factory) as db:
        stored = get_flag(db, KILL_SWITCH_FLAG)
        ledger = get_ledger_stats(db)
    status = {
        "kill_switch_active": stored or settings.KILL_SWITCH,
        "kill_switch_stored": stored,
        "kill_switch_env": settings.KILL_SWITCH,
        "hourly_limit": settings.HOURLY_LIMIT,
        "daily_limit": settings.DAILY_LIMIT,
        "similarity_threshold": settings.SIMILARITY_THRESHOLD,
        "business_hours": f"{settings.BUSINESS_HOURS_START:02d}:00-{settings.BUSINESS_HOURS_END:02d}:00",
        "ledger": ledger,
    }
    print(json.dumps(status, indent=2))
    return 0


def cmd_events(args):
    """Print recent system events, newest first."""
    settings = get_settings()
    session_factory = _session_factory(settings)
    with session_scope(session_factory) as db:
        events = list_system_events(db, event_types=args.type or None, limit=args.limit)
        rows = [
            {
                "event_type": e.event_type,
                "description": e.description,
                "occurred_at_ms": e.occurred_at_ms,
                "data": json.loads(e.data) if e.data else None,
            }
            for e in events
        ]
    print(json.dumps(rows, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sendguard",
        description="Operator controls for the outbound notification safety gate",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level for diagnostics on stdout")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the safety tables")
    init_parser.set_defaults(func=cmd_init_db)

    kill_parser = subparsers.add_parser("kill-switch", help="Toggle the persisted kill switch")
    kill_parser.add_argument("action", choices=["activate", "deactivate"])
    kill_parser.add_argument("--reason", default="Manual activation", help="Recorded with the event")
    kill_parser.set_defaults(func=cmd_kill_switch)

    status_parser = subparsers.add_parser("status", help="Show gate configuration and ledger summary")
    status_parser.set_defaults(func=cmd_status)

    events_parser = subparsers.add_parser("events", help="Show recent system events")
    events_parser.add_argument("--limit", type=int, default=20)
    events_parser.add_argument("--type", action="append", help="Filter by event type (repeatable)")
    events_parser.set_defaults(func=cmd_events)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.func(args)
    except SafetyStoreError as e:
        print(f"❌ Safety store error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
