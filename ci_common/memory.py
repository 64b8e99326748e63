"""
In-process implementations of the collaborator interfaces.

Used by the local job-file CLI and by tests; the daemon uses the HTTP
adapters from ci_client instead.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .interfaces import EventSink, JobSource, ReportSink
from .models import ExecutionOutcome, Job, JobEvent

logger = logging.getLogger(__name__)


class QueueJobSource(JobSource):
    """Job source backed by an in-memory FIFO queue."""

    def __init__(self, jobs: Iterable[Job] = ()):
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        for job in jobs:
            self._queue.put_nowait(job)

    def put(self, job: Job) -> None:
        """Queue a job for execution."""
        self._queue.put_nowait(job)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def next_job(self) -> Job | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


@dataclass(frozen=True)
class Report:
    """A single report received by CollectingReportSink."""

    job_id: str
    outcome: ExecutionOutcome
    transcript: str


class CollectingReportSink(ReportSink):
    """
    Report sink that keeps every report in memory.

    wait_for(count) lets callers block until a given number of jobs have
    been reported.
    """

    def __init__(self) -> None:
        self.reports: list[Report] = []
        self._changed = asyncio.Condition()

    async def report(
        self, job_id: str, outcome: ExecutionOutcome, transcript: str
    ) -> None:
        async with self._changed:
            self.reports.append(Report(job_id, outcome, transcript))
            self._changed.notify_all()

    async def wait_for(self, count: int) -> list[Report]:
        """Wait until at least `count` reports have arrived."""
        async with self._changed:
            await self._changed.wait_for(lambda: len(self.reports) >= count)
            return list(self.reports)

    def outcome_for(self, job_id: str) -> ExecutionOutcome | None:
        for report in self.reports:
            if report.job_id == job_id:
                return report.outcome
        return None


class LoggingReportSink(ReportSink):
    """Report sink that only logs outcomes."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    async def report(
        self, job_id: str, outcome: ExecutionOutcome, transcript: str
    ) -> None:
        level = logging.INFO if outcome.succeeded else logging.WARNING
        self.log.log(level, f"Job {job_id}: {outcome.describe()}")


class NullEventSink(EventSink):
    """Event sink that discards everything."""

    async def emit(self, job_id: str, event: JobEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    """Event sink that forwards job events to a logger at DEBUG level."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    async def emit(self, job_id: str, event: JobEvent) -> None:
        if event.type == "log":
            for line in (event.data or "").splitlines():
                self.log.debug(f"[{job_id}] {line}")
        elif event.type == "step_started":
            self.log.info(f"[{job_id}] step {event.step}: {event.data}")
        elif event.type == "step_finished":
            self.log.info(
                f"[{job_id}] step {event.step} finished (exit={event.exit_code})"
            )
        else:
            self.log.debug(f"[{job_id}] {event.type}: {event.data}")
