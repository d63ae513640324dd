"""erasure - operator CLI for user data deletion.

Commands::

    erasure init-db                 - Create the database tables
    erasure start <fiscalCode>      - Submit a deletion request and start its saga
    erasure abort <fiscalCode>      - Abort a deletion still in its grace period
    erasure status <fiscalCode>     - Show the saga and request status
    erasure run-scheduler [--once]  - Step due sagas (forever, or one poll)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import textwrap
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from erasure.app import ErasureApp, build_app
from erasure.config import get_settings
from erasure.database import close_db, create_all, get_session_factory, init_db
from erasure.saga.host import SagaInstance, SagaNotFound
from erasure.saga.orchestrator import describe, make_instance_id
from erasure.schemas import UserDataProcessingChoice, UserDataProcessingStatus
from erasure.telemetry.logging import configure_logging

log = structlog.get_logger(__name__)

# ------------------------------------------------------------------ #
# Formatting helpers
# ------------------------------------------------------------------ #

_RESET = "\033[0m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"


def _ok(msg: str) -> None:
    print(f"{_GREEN}  [OK]{_RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"{_YELLOW} [WARN]{_RESET} {msg}")


def _err(msg: str) -> None:
    print(f"{_RED}[ERROR]{_RESET} {msg}", file=sys.stderr)


def _dump(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


async def cmd_init_db(args: argparse.Namespace) -> int:
    await create_all()
    _ok("Tables created")
    return 0


async def cmd_start(args: argparse.Namespace, app: ErasureApp) -> int:
    now = datetime.now(UTC)
    fiscal_code: str = args.fiscal_code
    latest = await app.tracker.get_latest(UserDataProcessingChoice.DELETE, fiscal_code)
    if latest is not None and latest.status == UserDataProcessingStatus.PENDING:
        request = latest
        _warn(f"Reusing pending request {request.document_id}")
    else:
        request = await app.tracker.submit(UserDataProcessingChoice.DELETE, fiscal_code, now=now)

    outcome = await app.saga.start(request.model_dump(mode="json", by_alias=True), now)
    if not isinstance(outcome, SagaInstance):
        _dump(outcome.model_dump(mode="json", by_alias=True))
        return 1 if outcome.kind == "INVALID_INPUT" else 0

    _ok(f"Saga {outcome.instance_id} started")
    if args.run:
        result = await app.saga.run_until_suspended(outcome, datetime.now(UTC))
        if result is not None:
            _dump(result.model_dump(mode="json", by_alias=True))
    _dump(describe(outcome))
    return 0


async def cmd_abort(args: argparse.Namespace, app: ErasureApp) -> int:
    now = datetime.now(UTC)
    fiscal_code: str = args.fiscal_code
    latest = await app.tracker.get_latest(UserDataProcessingChoice.DELETE, fiscal_code)
    if latest is None:
        _err("No deletion request found")
        return 1
    if latest.status == UserDataProcessingStatus.PENDING:
        await app.tracker.transition(latest, UserDataProcessingStatus.ABORTED, now=now)
    else:
        _warn(f"Request is {latest.status}; the abort only wins during the grace period")

    try:
        instance = await app.saga.raise_abort(make_instance_id(fiscal_code), now)
    except SagaNotFound as exc:
        _err(str(exc))
        return 1
    _ok(f"Abort delivered to {instance.instance_id}")
    return 0


async def cmd_status(args: argparse.Namespace, app: ErasureApp) -> int:
    fiscal_code: str = args.fiscal_code
    try:
        instance = await app.saga.load(make_instance_id(fiscal_code))
    except SagaNotFound as exc:
        _err(str(exc))
        return 1
    latest = await app.tracker.get_latest(UserDataProcessingChoice.DELETE, fiscal_code)
    _dump(
        {
            "saga": describe(instance),
            "request": latest.model_dump(mode="json", by_alias=True) if latest else None,
        }
    )
    return 0


async def cmd_run_scheduler(args: argparse.Namespace, app: ErasureApp) -> int:
    if args.once:
        stepped = await app.scheduler.run_once()
        _ok(f"Stepped {stepped} saga(s)")
        return 0

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, app.scheduler.stop)
    await app.scheduler.run_forever()
    return 0


# ------------------------------------------------------------------ #
# Parser
# ------------------------------------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="erasure",
        description="User data deletion saga operator tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """\
            Examples:
              erasure init-db
              erasure start RSSMRA80A01H501U
              erasure abort RSSMRA80A01H501U
              erasure run-scheduler --once
            """
        ),
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    subparsers.add_parser("init-db", help="Create the database tables")

    start_parser = subparsers.add_parser("start", help="Submit a deletion request")
    start_parser.add_argument("fiscal_code", help="Fiscal code of the user")
    start_parser.add_argument(
        "--run",
        action="store_true",
        help="Step the new saga right away instead of waiting for the scheduler",
    )

    abort_parser = subparsers.add_parser("abort", help="Abort a pending deletion")
    abort_parser.add_argument("fiscal_code", help="Fiscal code of the user")

    status_parser = subparsers.add_parser("status", help="Show saga and request status")
    status_parser.add_argument("fiscal_code", help="Fiscal code of the user")

    scheduler_parser = subparsers.add_parser("run-scheduler", help="Step due sagas")
    scheduler_parser.add_argument(
        "--once", action="store_true", help="Run a single poll and exit"
    )

    return parser


# ------------------------------------------------------------------ #
# Dispatch
# ------------------------------------------------------------------ #

AppCommand = Callable[[argparse.Namespace, ErasureApp], Awaitable[int]]

_APP_COMMANDS: dict[str, AppCommand] = {
    "start": cmd_start,
    "abort": cmd_abort,
    "status": cmd_status,
    "run-scheduler": cmd_run_scheduler,
}


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    init_db(settings)
    try:
        if args.command == "init-db":
            return await cmd_init_db(args)
        async with build_app(settings, get_session_factory()) as app:
            return await _APP_COMMANDS[args.command](args, app)
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the erasure CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
