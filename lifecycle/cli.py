"""Command-line entry point for the periodic trigger and manual remediation.

Commands::

    lifecycle daily              - Run due deletions, then the retention sweep
    lifecycle sweep              - Run the retention sweep only
    lifecycle due-deletions      - Execute deletions whose grace period has ended
    lifecycle policy <name>      - Run one retention policy in isolation
    lifecycle policies           - Show the policy table and next scheduled run

Usage::

    python -m lifecycle.cli daily
    python -m lifecycle.cli policy session_data

Every command prints its report as JSON on stdout; logs go to stderr. The
exit code is 0 when the run had no failures and 1 otherwise, so cron can
alert on it.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TextIO

import structlog

from lifecycle.compliance.errors import LifecycleError
from lifecycle.compliance.service import DataLifecycleService
from lifecycle.config import Settings, get_settings
from lifecycle.database import close_db, get_session_factory, init_db
from lifecycle.scheduler import LifecycleScheduler, ScheduleConfig
from lifecycle.telemetry import bind_job_context, configure_logging

log = structlog.get_logger(__name__)

Command = Callable[[DataLifecycleService, argparse.Namespace], Awaitable[tuple[dict[str, Any], bool]]]


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


async def cmd_daily(
    service: DataLifecycleService, args: argparse.Namespace
) -> tuple[dict[str, Any], bool]:
    scheduler = LifecycleScheduler(service, ScheduleConfig(daily_hour_utc=args.hour))
    report = await scheduler.run_once()
    ok = report.deletions.errors == 0 and report.retention.errors == 0
    return report.to_dict(), ok


async def cmd_sweep(
    service: DataLifecycleService, args: argparse.Namespace
) -> tuple[dict[str, Any], bool]:
    bind_job_context("retention_sweep")
    report = await service.run_retention_sweep()
    return report.to_dict(), report.errors == 0


async def cmd_due_deletions(
    service: DataLifecycleService, args: argparse.Namespace
) -> tuple[dict[str, Any], bool]:
    bind_job_context("due_deletions")
    report = await service.run_due_deletions()
    return report.to_dict(), report.errors == 0


async def cmd_policy(
    service: DataLifecycleService, args: argparse.Namespace
) -> tuple[dict[str, Any], bool]:
    bind_job_context("retention_policy")
    result = await service.run_policy(args.name)
    return result.to_dict(), True


async def cmd_policies(
    service: DataLifecycleService, args: argparse.Namespace
) -> tuple[dict[str, Any], bool]:
    return service.retention_status(), True


_COMMANDS: dict[str, Command] = {
    "daily": cmd_daily,
    "sweep": cmd_sweep,
    "due-deletions": cmd_due_deletions,
    "policy": cmd_policy,
    "policies": cmd_policies,
}


# ------------------------------------------------------------------ #
# Parser
# ------------------------------------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lifecycle",
        description="Data lifecycle compliance engine - periodic jobs and remediation",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON (default: console format outside production)",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    daily_parser = subparsers.add_parser(
        "daily", help="Run due deletions, then the retention sweep"
    )
    daily_parser.add_argument(
        "--hour",
        type=int,
        default=None,
        help="UTC hour of the daily run, used to report the next run time",
    )
    subparsers.add_parser("sweep", help="Run every retention policy once")
    subparsers.add_parser("due-deletions", help="Execute deletions past their grace period")

    policy_parser = subparsers.add_parser("policy", help="Run one retention policy")
    policy_parser.add_argument("name", help="Policy name, e.g. session_data")

    subparsers.add_parser("policies", help="Show the retention policy table")
    return parser


async def run_command(
    args: argparse.Namespace,
    settings: Settings,
    *,
    service: DataLifecycleService | None = None,
    out: TextIO | None = None,
) -> int:
    """Execute one parsed command and print its JSON report to ``out`` (stdout)."""
    out = out or sys.stdout
    command = _COMMANDS[args.command]
    if getattr(args, "hour", None) is None:
        args.hour = settings.daily_run_hour_utc
    owns_db = service is None
    if service is None:
        init_db(settings, null_pool=True)
        service = DataLifecycleService(get_session_factory(), settings)

    try:
        payload, ok = await command(service, args)
    except LifecycleError as exc:
        log.error("cli.command_failed", command=args.command, error_code=exc.code)
        print(json.dumps(exc.to_dict(), indent=2), file=out)
        return 1
    finally:
        if owns_db:
            await close_db()

    print(json.dumps(payload, indent=2, default=str), file=out)
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    """Entry point for the lifecycle CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(
        json_logs=args.json_logs or settings.is_prod,
        log_level=settings.log_level,
        stream=sys.stderr,
    )
    return asyncio.run(run_command(args, settings))


if __name__ == "__main__":
    sys.exit(main())
