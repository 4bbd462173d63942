"""CLI entry point for ticketflow.

Subcommands:
    ticketflow           - Run the daemon (default behavior)
    ticketflow run       - Run the daemon
    ticketflow status    - Show how many tickets sit in each stage
"""

from __future__ import annotations

import argparse
import asyncio
import shutil
import sys
from pathlib import Path

from ticketflow import __version__
from ticketflow.config import Config, load_config
from ticketflow.lifecycle import TicketLifecycle, read_error_record
from ticketflow.models import Stage

# ANSI escape codes for startup messages
RESET = "\033[0m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"


def startup_print(msg: str, color: str = GREEN) -> None:
    """Print a startup message, colored when attached to a terminal."""
    if sys.stdout.isatty():
        print(f"{color}{msg}{RESET}")
    else:
        print(msg)


def check_required_tools(config: Config) -> list[str]:
    """Return the names of required executables missing from PATH."""
    missing = []
    for tool in ("git", config.executor_command[0]):
        if shutil.which(tool) is None:
            missing.append(tool)
    return missing


def run_daemon(config_path: Path | None = None, daemon_mode: bool = False) -> None:
    """Load config and run the daemon.

    Args:
        config_path: Explicit config file, or None for the default lookup
        daemon_mode: If True, log to file only (background mode).
                     If False, log to both stdout and file.
    """
    from ticketflow.daemon import Daemon
    from ticketflow.logger import get_logger, setup_logging
    from ticketflow.telemetry import init_telemetry

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Config file not found: {e.filename}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    missing = check_required_tools(config)
    if "git" in missing:
        print("git is required but was not found on PATH", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        log_file=config.log_file,
        log_size=config.log_size,
        log_backups=config.log_backups,
        daemon_mode=daemon_mode,
    )
    logger = get_logger(__name__)
    logger.info(f"=== ticketflow Starting (v{__version__}) ===")
    logger.info(f"Logging to {config.log_file}")
    for tool in missing:
        logger.warning(f"Executor '{tool}' not found on PATH; tickets will fail until it is installed")
    if not config.gitea_token:
        logger.warning("GITEA_TOKEN not set; results will be committed locally but not pushed")

    if config.otel_endpoint:
        init_telemetry(config.otel_endpoint, config.otel_service_name, service_version=__version__)

    daemon = Daemon(config, version=__version__)
    try:
        exit_code = asyncio.run(daemon.run())
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)

    logger.info("=== ticketflow Stopped ===")
    sys.exit(exit_code)


def cmd_run(args: argparse.Namespace) -> None:
    """Handle the 'run' subcommand (default daemon behavior)."""
    run_daemon(config_path=args.config, daemon_mode=args.daemon)


def cmd_status(args: argparse.Namespace) -> None:
    """Handle the 'status' subcommand."""
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    lifecycle = TicketLifecycle(config)
    width = max(len(stage.value) for stage in Stage)
    for stage in Stage:
        tickets = lifecycle.list_stage(stage)
        print(f"{stage.value:<{width}}  {len(tickets):>4}  {lifecycle.stage_dir(stage)}")

    failed = lifecycle.list_stage(Stage.FAILED)
    if failed:
        print()
        print("Failed tickets:")
        for path in failed:
            record = read_error_record(path)
            error = record.get("error") if record else None
            print(f"  {path.name}: {error or '(no error record)'}")


def main() -> None:
    """Main entry point for the ticketflow CLI."""
    parser = argparse.ArgumentParser(
        prog="ticketflow",
        description="Folder-driven ticket processing daemon",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"ticketflow {__version__}",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to a KEY=value config file (default: .ticketflow/config, then environment)",
    )
    parser.add_argument(
        "--daemon",
        "-d",
        action="store_true",
        help="Run in daemon mode (log to file only, no stdout)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # 'run' subcommand (also the default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the ticketflow daemon (default if no subcommand given)",
    )
    run_parser.add_argument("--config", "-c", type=Path, default=argparse.SUPPRESS)
    run_parser.add_argument(
        "--daemon",
        "-d",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Run in daemon mode (log to file only, no stdout)",
    )

    status_parser = subparsers.add_parser(
        "status",
        help="Show the number of tickets in each stage",
    )
    status_parser.add_argument("--config", "-c", type=Path, default=argparse.SUPPRESS)

    args = parser.parse_args()

    if args.command == "status":
        cmd_status(args)
    else:
        # No subcommand given - default to 'run' behavior
        args.command = "run"
        cmd_run(args)


if __name__ == "__main__":
    main()
