"""
Local CLI for running CI jobs from a JSON file.

Jobs go through the same worker pool, executor and workspace handling as
jobs received from the dispatch service; only the job source and report
sink are in-memory.
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import click

from ci_common.memory import CollectingReportSink, LoggingEventSink, QueueJobSource, Report
from ci_common.models import Job
from ci_runner.pool import WorkerPool
from ci_runner.steps import StepRunner
from ci_runner.variables import missing_variables
from ci_runner.workspace import WorkspaceManager

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def load_jobs(path: Path) -> list[Job]:
    """
    Load jobs from a JSON file.

    The file holds either a list of job objects or {"jobs": [...]}.
    Jobs without an id are numbered "job-1", "job-2", ...

    Raises:
        ValueError: If the file is not valid JSON or a job is malformed
    """
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e

    entries = data.get("jobs") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"{path} must contain a list of jobs or a 'jobs' list")

    jobs = []
    for number, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ValueError(f"Job #{number} must be an object")
        entry = {"id": f"job-{number}", **entry}
        try:
            jobs.append(Job.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Job #{number} is invalid: {e}") from e
    return jobs


async def execute_jobs(
    jobs: list[Job],
    concurrency: int = 2,
    builds_dir: Path | None = None,
    shell: str = "/bin/sh",
    verbose: bool = False,
) -> list[Report]:
    """
    Run jobs through a worker pool until every one has been reported.

    Returns:
        Reports in the order the jobs were given
    """
    source = QueueJobSource(jobs)
    sink = CollectingReportSink()
    pool = WorkerPool(
        source=source,
        report_sink=sink,
        workspace_manager=WorkspaceManager(builds_dir),
        step_runner=StepRunner(shell=shell),
        concurrency=concurrency,
        poll_interval=0.05,
        event_sink=LoggingEventSink() if verbose else None,
    )

    runner = asyncio.create_task(pool.run())
    waiter = asyncio.create_task(sink.wait_for(len(jobs)))
    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        pool.stop()
        await runner

    order = {job.id: position for position, job in enumerate(jobs)}
    return sorted(sink.reports, key=lambda report: order.get(report.job_id, len(order)))


def report_to_dict(report: Report, include_transcript: bool = False) -> dict[str, Any]:
    result = {"job_id": report.job_id, **report.outcome.to_dict()}
    if include_transcript:
        result["transcript"] = report.transcript
    return result


def load_jobs_or_exit(jobs_file: Path) -> list[Job]:
    try:
        return load_jobs(jobs_file)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
def cli():
    """CI Exec - Run CI jobs locally from a JSON job file."""
    pass


@cli.command("validate")
@click.argument(
    "jobs_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def validate(jobs_file: Path):
    """Check that every variable referenced by a job's script is defined."""
    jobs = load_jobs_or_exit(jobs_file)

    invalid = 0
    for job in jobs:
        missing = missing_variables(job, os.environ)
        if missing:
            invalid += 1
            click.echo(f"✗ {job.id}: undefined variables: {', '.join(missing)}")
        else:
            click.echo(f"✓ {job.id}: {len(job.script)} steps")

    if invalid:
        click.echo(f"\n{invalid} of {len(jobs)} jobs would fail setup", err=True)
        sys.exit(1)


@cli.command("run")
@click.argument(
    "jobs_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="Maximum number of jobs running at once",
)
@click.option(
    "--builds-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Root directory for job workspaces (default: system temp dir)",
)
@click.option("--shell", default="/bin/sh", show_default=True, help="Shell for job commands")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--show-logs", is_flag=True, help="Print each job's log transcript")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default="WARNING",
    show_default=True,
    help="Logging level",
)
def run(
    jobs_file: Path,
    concurrency: int,
    builds_dir: Path | None,
    shell: str,
    json_output: bool,
    show_logs: bool,
    log_level: str,
):
    """Run every job in JOBS_FILE and print the outcomes."""
    jobs = load_jobs_or_exit(jobs_file)

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    reports = run_async(
        execute_jobs(
            jobs,
            concurrency=concurrency,
            builds_dir=builds_dir,
            shell=shell,
            verbose=log_level == "DEBUG",
        )
    )

    if json_output:
        click.echo(
            json.dumps([report_to_dict(r, show_logs) for r in reports], indent=2)
        )
    else:
        click.echo(f"\n{'Job ID':<24} {'Result':<12} {'Step':<6} {'Duration':<10} Reason")
        click.echo("-" * 80)
        for r in reports:
            outcome = r.outcome
            step = "-" if outcome.step_index is None else str(outcome.step_index)
            click.echo(
                f"{r.job_id:<24} {outcome.kind.value:<12} {step:<6} "
                f"{outcome.duration:<10.2f} {outcome.reason or ''}"
            )
        click.echo()

        if show_logs:
            for r in reports:
                click.echo(f"===== {r.job_id} =====")
                click.echo(r.transcript)

    if not all(r.outcome.succeeded for r in reports):
        sys.exit(1)


def main():
    """Main entry point for the ci-exec CLI."""
    cli()


if __name__ == "__main__":
    main()
