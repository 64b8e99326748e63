"""
Standalone entrypoint for running the CI runner daemon.

The runner polls the dispatch service for jobs and executes up to
--concurrency of them at once, each in its own workspace.

Usage:
    python -m ci_runner [OPTIONS]
    ci-runner [OPTIONS]  (after pip install)

Environment Variables:
    CI_SERVER_URL: Dispatch service base URL (required)
    CI_RUNNER_TOKEN: Runner authentication token (required)
    CI_CONCURRENCY: Maximum number of concurrent jobs (default: 8)
    CI_BUILDS_DIR: Root directory for job workspaces (default: fresh temp dir)
    CI_POLL_INTERVAL: Seconds between polls when idle (default: 3.0)
    CI_SHELL: Shell used to run job commands (default: /bin/sh)
    CI_FAIL_FAST: Stop when a workspace cannot be created (default: off)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import tempfile

from ci_client.client import DispatchClient, HTTPJobSource, HTTPReportSink
from ci_common.errors import WorkspaceError
from ci_common.memory import LoggingEventSink
from ci_runner.pool import WorkerPool
from ci_runner.steps import StepRunner
from ci_runner.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8
DEFAULT_POLL_INTERVAL = 3.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="CI Runner - execute jobs from a dispatch service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CI_SERVER_URL       Dispatch service base URL
  CI_RUNNER_TOKEN     Runner authentication token
  CI_CONCURRENCY      Maximum number of concurrent jobs (default: 8)
  CI_BUILDS_DIR       Root directory for job workspaces (default: temp dir)
  CI_POLL_INTERVAL    Seconds between polls when idle (default: 3.0)
  CI_SHELL            Shell used to run job commands (default: /bin/sh)
  CI_FAIL_FAST        Set to 1 to stop when a workspace cannot be created

Note: Command-line arguments override environment variables.

Examples:
  # Run against a local dispatch service
  ci-runner --url http://localhost:8000 --token secret

  # Run at most two jobs at a time in a dedicated builds directory
  ci-runner --concurrency 2 --builds-dir /var/lib/ci-runner/builds --purge-stale

  # Enable debug logging (includes job output)
  ci-runner --log-level DEBUG
        """,
    )

    parser.add_argument("--url", type=str, default=None, help="Dispatch service URL")
    parser.add_argument("--token", type=str, default=None, help="Runner token")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum concurrent jobs (default: CI_CONCURRENCY env or 8)",
    )
    parser.add_argument(
        "--builds-dir",
        type=str,
        default=None,
        help="Root directory for job workspaces (default: CI_BUILDS_DIR env or temp dir)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between polls when idle (default: CI_POLL_INTERVAL env or 3.0)",
    )
    parser.add_argument(
        "--shell",
        type=str,
        default=None,
        help="Shell used to run job commands (default: CI_SHELL env or /bin/sh)",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        default=None,
        help="Stop the runner when a workspace cannot be created",
    )
    parser.add_argument(
        "--purge-stale",
        action="store_true",
        help="Remove workspaces left behind by a previous run before starting",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_server_url(args: argparse.Namespace) -> str | None:
    """Get the dispatch service URL from CLI args or environment."""
    return args.url or os.environ.get("CI_SERVER_URL")


def get_token(args: argparse.Namespace) -> str | None:
    """Get the runner token from CLI args or environment."""
    return args.token or os.environ.get("CI_RUNNER_TOKEN")


def get_concurrency(args: argparse.Namespace) -> int:
    """
    Get the concurrency limit from CLI args or environment.

    Args:
        args: Parsed command-line arguments

    Returns:
        Maximum number of concurrent jobs (at least 1)
    """
    if args.concurrency is not None:
        if args.concurrency < 1:
            logger.warning(
                f"Invalid concurrency={args.concurrency}, using default {DEFAULT_CONCURRENCY}"
            )
            return DEFAULT_CONCURRENCY
        return args.concurrency

    raw = os.environ.get("CI_CONCURRENCY", str(DEFAULT_CONCURRENCY))
    try:
        concurrency = int(raw)
    except ValueError:
        logger.warning(f"Invalid CI_CONCURRENCY={raw}, using default {DEFAULT_CONCURRENCY}")
        return DEFAULT_CONCURRENCY
    if concurrency < 1:
        logger.warning(f"Invalid CI_CONCURRENCY={raw}, using default {DEFAULT_CONCURRENCY}")
        return DEFAULT_CONCURRENCY
    return concurrency


def get_poll_interval(args: argparse.Namespace) -> float:
    """
    Get the idle poll interval from CLI args or environment.

    Args:
        args: Parsed command-line arguments

    Returns:
        Seconds between polls when no job is available
    """
    if args.poll_interval is not None:
        if args.poll_interval <= 0:
            logger.warning(
                f"Invalid poll interval={args.poll_interval}, "
                f"using default {DEFAULT_POLL_INTERVAL}"
            )
            return DEFAULT_POLL_INTERVAL
        return args.poll_interval

    raw = os.environ.get("CI_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))
    try:
        interval = float(raw)
    except ValueError:
        logger.warning(
            f"Invalid CI_POLL_INTERVAL={raw}, using default {DEFAULT_POLL_INTERVAL}"
        )
        return DEFAULT_POLL_INTERVAL
    if interval <= 0:
        logger.warning(
            f"Invalid CI_POLL_INTERVAL={raw}, using default {DEFAULT_POLL_INTERVAL}"
        )
        return DEFAULT_POLL_INTERVAL
    return interval


def get_builds_dir(args: argparse.Namespace) -> str:
    """
    Get the workspace root from CLI args or environment.

    Falls back to a fresh temporary directory.
    """
    if args.builds_dir:
        return args.builds_dir
    env_dir = os.environ.get("CI_BUILDS_DIR")
    if env_dir:
        return env_dir
    return tempfile.mkdtemp(prefix="ci_runner_")


def get_shell(args: argparse.Namespace) -> str:
    """Get the shell used to run job commands."""
    if args.shell:
        return args.shell
    return os.environ.get("CI_SHELL", "/bin/sh")


def get_fail_fast(args: argparse.Namespace) -> bool:
    """Get the fail-fast flag from CLI args or environment."""
    if args.fail_fast is not None:
        return args.fail_fast
    return os.environ.get("CI_FAIL_FAST", "").lower() in ("1", "true", "yes")


async def run_runner(args: argparse.Namespace) -> None:
    """
    Initialize and run the worker pool.

    Args:
        args: Parsed command-line arguments

    This function sets up the pool with configured parameters and runs it
    until interrupted. The first SIGINT or SIGTERM stops polling and lets
    running jobs finish; a second one cancels them.
    """
    server_url = get_server_url(args)
    token = get_token(args)
    if not server_url or not token:
        raise ValueError("Both --url/CI_SERVER_URL and --token/CI_RUNNER_TOKEN are required")

    concurrency = get_concurrency(args)
    poll_interval = get_poll_interval(args)
    builds_dir = get_builds_dir(args)
    shell = get_shell(args)
    fail_fast = get_fail_fast(args)

    logger.info("Starting CI Runner")
    logger.info(f"  Dispatch service: {server_url}")
    logger.info(f"  Concurrency: {concurrency}")
    logger.info(f"  Builds directory: {builds_dir}")
    logger.info(f"  Poll interval: {poll_interval}s")
    logger.info(f"  Shell: {shell}")
    logger.info(f"  Fail fast: {fail_fast}")

    workspace_manager = WorkspaceManager(builds_dir)
    if args.purge_stale:
        removed = await workspace_manager.purge_stale()
        logger.info(f"Removed {removed} stale workspaces")

    client = DispatchClient(server_url, token)
    source = HTTPJobSource(client)
    pool = WorkerPool(
        source=source,
        report_sink=HTTPReportSink(client),
        workspace_manager=workspace_manager,
        step_runner=StepRunner(shell=shell),
        concurrency=concurrency,
        poll_interval=poll_interval,
        event_sink=LoggingEventSink(logging.getLogger("ci_runner.jobs")),
        fail_fast=fail_fast,
    )

    signals_received = 0

    def signal_handler(sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        nonlocal signals_received
        signals_received += 1
        if signals_received == 1:
            logger.info(f"Received {sig.name}, finishing running jobs (repeat to cancel them)")
            pool.stop()
        else:
            logger.info(f"Received {sig.name} again, cancelling running jobs")
            pool.stop(cancel_jobs=True)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await pool.run()
    finally:
        logger.info("Closing dispatch client...")
        await source.close()
        logger.info("Runner stopped cleanly")


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the runner.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_runner(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except WorkspaceError as e:
        logger.error(f"Stopping: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
