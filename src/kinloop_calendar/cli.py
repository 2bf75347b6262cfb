"""Command-line interface for KinLoop calendar sync.

Meant for scheduled jobs and operators:

```
kinloop-calendar init-db
kinloop-calendar sync --user U --room R
kinloop-calendar export-all --user U --room R
kinloop-calendar status --user U
```

Each command prints its summary as JSON. The exit code is 1 when the user
must reconnect Google or the summary carries errors.
"""

import argparse
import asyncio
import dataclasses
import json
import sys

from kinloop_calendar.calendar.sync import build_sync_service
from kinloop_calendar.config import configure_logging, get_settings
from kinloop_calendar.database.connection import (
    close_db,
    create_tables,
    get_session_factory,
    init_db,
)


def _print(summary: dict) -> None:
    print(json.dumps(summary, indent=2, default=str))


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    await init_db()
    try:
        if args.command == "init-db":
            await create_tables()
            _print({"success": True})
            return 0

        service = build_sync_service(settings, get_session_factory())

        if args.command == "sync":
            result = await service.sync(args.user, args.room)
            summary = dataclasses.asdict(result)
            summary["success"] = result.success
            _print(summary)
            return 0 if result.success and not result.reauthorization_required else 1

        if args.command == "export-all":
            result = await service.export_all(args.user, args.room)
            summary = dataclasses.asdict(result)
            summary["success"] = result.success
            _print(summary)
            return 0 if result.success and not result.reauthorization_required else 1

        if args.command == "status":
            status = await service.tokens.connection_status(args.user)
            _print(dataclasses.asdict(status))
            return 0 if status.connected else 1

        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await close_db()


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="KinLoop Calendar Sync - Keep room events in step with Google Calendar"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: LOG_LEVEL setting)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create the database tables")

    # Sync command
    sync_parser = subparsers.add_parser(
        "sync", help="Import the user's selected calendars into a room"
    )
    sync_parser.add_argument("--user", required=True, help="User id")
    sync_parser.add_argument("--room", required=True, help="Room id")

    # Export command
    export_parser = subparsers.add_parser(
        "export-all", help="Push every room-authored event to Google Calendar"
    )
    export_parser.add_argument("--user", required=True, help="User id")
    export_parser.add_argument("--room", required=True, help="Room id")

    # Status command
    status_parser = subparsers.add_parser(
        "status", help="Show the user's Google connection"
    )
    status_parser.add_argument("--user", required=True, help="User id")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(args.log_level)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
