"""
Lap Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for running lap sessions.

- argparse sub-commands mapped onto the control surface
- Configuration from environment, overridden by flags
- SIGINT / SIGTERM request a graceful stop

============================================================
USAGE
============================================================
python app.py new --resource <ref> --pool-size 10 --funding 1.5
python app.py run --session <ref> --strategy increase_makers_volume
python app.py restart --session <ref> --stage 3
python app.py sweep --session <ref>
python app.py status --session <ref>
python app.py list

The admin credential, when importing an existing admin, is read
from LAP_ADMIN_CREDENTIAL and never accepted on the command line.

============================================================
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from .adapters.factory import LapEngine, build_engine
from .config import LapEngineConfig
from .errors import LapEngineError
from .logging_utils import register_secret, setup_logging
from .session_runner import SessionRequest
from .types import ControlAck, SessionStage


logger = logging.getLogger(__name__)

ADMIN_CREDENTIAL_ENV = "LAP_ADMIN_CREDENTIAL"


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--production",
        action="store_true",
        help="Start from production defaults: http ledger, DexScreener, SQL store, JSON logs",
    )

    # --------------------------------------------------------
    # Ledger Options
    # --------------------------------------------------------
    ledger_group = parser.add_argument_group("Ledger Options")
    ledger_group.add_argument(
        "--ledger-backend",
        choices=["mock", "http"],
        help="Ledger backend (default: LAP_LEDGER_BACKEND or mock)",
    )
    ledger_group.add_argument("--ledger-url", metavar="URL", help="Ledger gateway base URL")
    ledger_group.add_argument(
        "--market-data-backend",
        choices=["static", "dexscreener"],
        help="Market data backend",
    )
    ledger_group.add_argument(
        "--ops-per-second",
        type=float,
        metavar="RATE",
        help="Per-worker ledger operations per second",
    )

    # --------------------------------------------------------
    # Storage Options
    # --------------------------------------------------------
    storage_group = parser.add_argument_group("Storage Options")
    storage_group.add_argument(
        "--session-backend",
        choices=["json", "sql"],
        help="Session store backend (default: LAP_SESSION_BACKEND or json)",
    )
    storage_group.add_argument("--session-dir", metavar="PATH", help="Directory for JSON session files")
    storage_group.add_argument("--database-url", metavar="URL", help="SQLAlchemy database URL")

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: LAP_LOG_LEVEL or INFO)",
    )
    logging_group.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Logging format (default: text, json with --production)",
    )


def _add_session_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--session", "-s", required=True, metavar="REF", help="Session reference")


def _add_strategy_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--strategy",
        default=None,
        metavar="ID",
        help="Strategy profile (default: increase_makers_volume)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lap-engine",
        description="Rotating worker pool lap engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Restart points:
  1  After pair discovery
  2  After admin identity creation
  3  After worker pool generation
  4  After primary distribution
  5  After secondary distribution
  6  Sweep and close all worker accounts
        """,
    )
    parser.add_argument("--version", "-v", action="version", version="%(prog)s 1.0.0")

    commands = parser.add_subparsers(dest="command", required=True)

    new = commands.add_parser("new", help="Start a new session")
    new.add_argument("--resource", required=True, metavar="REF", help="Secondary resource reference")
    new.add_argument("--pool-size", type=int, required=True, metavar="N", help="Workers per lap (1-100)")
    new.add_argument("--funding", required=True, metavar="AMOUNT", help="Primary amount distributed at stage 4")
    new.add_argument("--session-ref", metavar="REF", help="Explicit session reference")
    new.add_argument("--no-run", action="store_true", help="Only record stage 1 and exit")
    _add_strategy_option(new)
    _add_common_options(new)

    run = commands.add_parser("run", help="Resume a session from its recorded stage")
    _add_session_option(run)
    _add_strategy_option(run)
    _add_common_options(run)

    restart = commands.add_parser("restart", help="Restart a session from a specific point")
    _add_session_option(restart)
    restart.add_argument("--stage", required=True, metavar="N", help="Restart point (1-6)")
    _add_strategy_option(restart)
    _add_common_options(restart)

    sweep = commands.add_parser("sweep", help="Sweep and close every worker account")
    _add_session_option(sweep)
    _add_common_options(sweep)

    status = commands.add_parser("status", help="Show a stored session")
    _add_session_option(status)
    _add_common_options(status)

    listing = commands.add_parser("list", help="List stored sessions")
    _add_common_options(listing)

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []

    if args.command == "new":
        if not 1 <= args.pool_size <= 100:
            errors.append("Count must be between 1 and 100")
        try:
            if Decimal(args.funding) <= 0:
                errors.append("--funding must be positive")
        except InvalidOperation:
            errors.append(f"--funding is not a number: {args.funding}")

    if args.command == "restart":
        try:
            SessionStage.parse(args.stage)
        except ValueError as e:
            errors.append(str(e))

    if getattr(args, "ops_per_second", None) is not None and args.ops_per_second <= 0:
        errors.append("--ops-per-second must be positive")

    return errors


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> LapEngineConfig:
    """Environment first, then command line overrides."""
    base = LapEngineConfig.for_production() if args.production else None
    config = LapEngineConfig.from_env(base)

    if args.ledger_backend:
        config.ledger.backend = args.ledger_backend
    if args.ledger_url:
        config.ledger.base_url = args.ledger_url
    if args.market_data_backend:
        config.market_data.backend = args.market_data_backend
    if args.ops_per_second:
        config.rate_limit.operations_per_second = args.ops_per_second
    if args.session_backend:
        config.storage.backend = args.session_backend
    if args.session_dir:
        config.storage.session_dir = args.session_dir
    if args.database_url:
        config.storage.database_url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    return config


# ============================================================
# COMMANDS
# ============================================================

def _install_signal_handlers(engine: LapEngine) -> None:
    def request_stop() -> None:
        logger.warning("Signal received, stopping at next phase boundary")
        asyncio.ensure_future(engine.controller.stop())

    if sys.platform == "win32":
        signal.signal(signal.SIGINT, lambda *_: request_stop())
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_stop)


async def _follow(engine: LapEngine, ack: ControlAck) -> int:
    """Wait for an accepted background command and report its outcome."""
    if not ack.accepted:
        print(f"Error: {ack.message}", file=sys.stderr)
        return 1

    print(ack.message)
    await engine.controller.wait()
    status = engine.controller.status()
    print(json.dumps(status.to_dict(), indent=2, default=str))
    return 0 if status.last_error is None else 1


async def _show_status(engine: LapEngine, session_ref: str) -> int:
    checkpoint = await engine.store.load(session_ref)
    print(json.dumps({
        "session_ref": checkpoint.session_ref,
        "stage": int(checkpoint.stage),
        "stage_label": checkpoint.stage.label,
        "resource_ref": checkpoint.resource_ref,
        "resource_name": checkpoint.resource_name,
        "admin": checkpoint.admin.address if checkpoint.admin else None,
        "workers": [w.to_dict() for w in checkpoint.workers],
        "stranded_workers": [w.address for w in checkpoint.stranded_workers],
        "pool_size": checkpoint.pool_size,
        "funding_amount": str(checkpoint.funding_amount),
        "last_lap_number": checkpoint.last_lap_number,
        "created_at": checkpoint.created_at.isoformat(),
        "updated_at": checkpoint.updated_at.isoformat(),
    }, indent=2))
    return 0


async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    config = build_config(args)
    session_ref = getattr(args, "session", None) or getattr(args, "session_ref", None)
    setup_logging(config.log_level, config.log_format, correlation_id=session_ref)

    engine = build_engine(config)
    controller = engine.controller

    try:
        await engine.start()
        _install_signal_handlers(engine)

        if args.command == "list":
            for ref in await engine.store.list_sessions():
                print(ref)
            return 0

        if args.command == "status":
            return await _show_status(engine, args.session)

        if args.command == "new":
            credential = os.environ.get(ADMIN_CREDENTIAL_ENV)
            register_secret(credential)
            checkpoint = await engine.runner.new_session(SessionRequest(
                resource_ref=args.resource,
                pool_size=args.pool_size,
                funding_amount=Decimal(args.funding),
                admin_credential=credential,
                session_ref=args.session_ref,
            ))
            print(f"Session {checkpoint.session_ref} created for {checkpoint.resource_name}")
            if args.no_run:
                return 0
            engine.attach_lap_history(checkpoint.session_ref)
            return await _follow(engine, await controller.start(args.strategy, checkpoint.session_ref))

        engine.attach_lap_history(args.session)

        if args.command == "run":
            return await _follow(engine, await controller.start(args.strategy, args.session))
        if args.command == "restart":
            return await _follow(engine, await controller.restart_from(args.stage, args.session, args.strategy))
        if args.command == "sweep":
            return await _follow(engine, await controller.sweep(args.session))

        print(f"Error: unknown command {args.command}", file=sys.stderr)
        return 1

    except LapEngineError as e:
        logger.error(f"{type(e).__name__} [{e.code}]: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await engine.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        return 130
