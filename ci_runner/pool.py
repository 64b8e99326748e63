"""
Worker pool with bounded concurrency.

The pool is the single admission point for jobs: it polls the job source
only while a slot is free, hands every accepted job to its own executor
task and frees the slot when that job reaches a terminal state.
"""

import asyncio
import logging

from ci_common.errors import TransientSourceError, WorkspaceError
from ci_common.interfaces import EventSink, JobSource, ReportSink
from ci_common.models import Job

from .executor import JobExecutor
from .steps import StepRunner
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Runs jobs from a job source with at most `concurrency` in flight.

    Job source failures are retried with exponential backoff and never stop
    the pool. A job's failure, success or cancellation only affects that
    job and its own slot.
    """

    def __init__(
        self,
        source: JobSource,
        report_sink: ReportSink,
        workspace_manager: WorkspaceManager | None = None,
        step_runner: StepRunner | None = None,
        concurrency: int = 8,
        poll_interval: float = 3.0,
        max_retry_interval: float = 60.0,
        event_sink: EventSink | None = None,
        fail_fast: bool = False,
    ):
        """
        Initialize the worker pool.

        Args:
            source: Supplier of jobs
            report_sink: Receiver of job outcomes
            workspace_manager: Creates per-job workspaces
            step_runner: Runs job scripts
            concurrency: Maximum number of jobs running at once
            poll_interval: Seconds to wait when the source has no job
            max_retry_interval: Upper bound for the source error backoff
            event_sink: Optional receiver of live job events
            fail_fast: Stop the pool when a workspace cannot be created
                       instead of failing just that job
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        self.source = source
        self.report_sink = report_sink
        self.workspace_manager = workspace_manager or WorkspaceManager()
        self.step_runner = step_runner or StepRunner()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.max_retry_interval = max_retry_interval
        self.event_sink = event_sink
        self.fail_fast = fail_fast

        # Track running jobs: task -> executor
        self.active_jobs: dict[asyncio.Task, JobExecutor] = {}
        self.peak_running = 0
        self.completed_count = 0
        self._running = False
        self._stop_event = asyncio.Event()
        self._fatal_error: WorkspaceError | None = None

    @property
    def running_count(self) -> int:
        return len(self.active_jobs)

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """
        Poll for jobs and run them until stop() is called.

        Returns once polling has stopped and every in-flight job has
        reached a terminal state.

        Raises:
            WorkspaceError: In fail-fast mode, when a job could not get a
                workspace
            asyncio.CancelledError: If the pool task is cancelled; running
                jobs are cancelled and cleaned up first
        """
        if self._running:
            raise RuntimeError("Worker pool already running")

        self._running = True
        self._stop_event.clear()
        slots = asyncio.Semaphore(self.concurrency)
        logger.info(f"Worker pool started (concurrency={self.concurrency})")

        try:
            await self._poll_loop(slots)
            if self.active_jobs:
                logger.info(f"Waiting for {len(self.active_jobs)} running jobs to finish")
                await asyncio.gather(*list(self.active_jobs), return_exceptions=True)
        except asyncio.CancelledError:
            tasks = list(self.active_jobs)
            logger.info(f"Worker pool cancelled, cancelling {len(tasks)} running jobs")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._running = False

        logger.info(f"Worker pool stopped after {self.completed_count} jobs")
        if self._fatal_error is not None:
            raise self._fatal_error

    def stop(self, cancel_jobs: bool = False) -> None:
        """
        Stop polling for new jobs.

        Args:
            cancel_jobs: Also cancel every running job instead of letting
                         them finish
        """
        if not self._stop_event.is_set():
            logger.info("Stopping worker pool...")
        self._stop_event.set()
        if cancel_jobs:
            for executor in list(self.active_jobs.values()):
                executor.cancel()

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a running job.

        Args:
            job_id: Job identifier

        Returns:
            True if a running job with that id was found
        """
        found = False
        for executor in list(self.active_jobs.values()):
            if executor.job_id == job_id:
                executor.cancel()
                found = True
        return found

    async def _poll_loop(self, slots: asyncio.Semaphore) -> None:
        """Main admission loop."""
        failures = 0
        while not self._stop_event.is_set():
            if not await self._acquire_slot(slots):
                break

            try:
                job = await self.source.next_job()
            except Exception as e:
                slots.release()
                failures += 1
                delay = self._retry_delay(failures)
                if isinstance(e, TransientSourceError):
                    logger.warning(
                        f"Job source unavailable (attempt {failures}): {e}; "
                        f"retrying in {delay:.1f}s"
                    )
                else:
                    logger.error(
                        f"Unexpected job source error (attempt {failures}): {e}; "
                        f"retrying in {delay:.1f}s",
                        exc_info=True,
                    )
                await self._sleep(delay)
                continue

            failures = 0
            if job is None:
                slots.release()
                await self._sleep(self.poll_interval)
                continue

            self._dispatch(job, slots)

    def _dispatch(self, job: Job, slots: asyncio.Semaphore) -> None:
        executor = JobExecutor(
            job,
            workspace_manager=self.workspace_manager,
            step_runner=self.step_runner,
            report_sink=self.report_sink,
            event_sink=self.event_sink,
        )
        task = asyncio.create_task(self._run_job(executor, slots), name=f"job-{job.id}")
        self.active_jobs[task] = executor
        self.peak_running = max(self.peak_running, len(self.active_jobs))
        logger.info(
            f"Accepted job {job.id} ({len(self.active_jobs)}/{self.concurrency} running)"
        )

    async def _run_job(self, executor: JobExecutor, slots: asyncio.Semaphore) -> None:
        try:
            await executor.run()
        except Exception as e:
            logger.error(f"Unexpected error in job {executor.job_id}: {e}", exc_info=True)
        finally:
            self.active_jobs.pop(asyncio.current_task(), None)
            self.completed_count += 1
            slots.release()

        if (
            self.fail_fast
            and executor.provisioning_error is not None
            and self._fatal_error is None
        ):
            logger.critical(
                f"Workspace provisioning failed in fail-fast mode: "
                f"{executor.provisioning_error}"
            )
            self._fatal_error = executor.provisioning_error
            self._stop_event.set()

    async def _acquire_slot(self, slots: asyncio.Semaphore) -> bool:
        """
        Wait for a free slot.

        Returns:
            True with the slot held, or False if the pool was stopped first
        """
        acquire = asyncio.create_task(slots.acquire())
        stopped = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({acquire, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not acquire.done():
                acquire.cancel()

        if acquire.done() and not acquire.cancelled():
            if self._stop_event.is_set():
                slots.release()
                return False
            return True
        return False

    async def _sleep(self, delay: float) -> None:
        """Sleep for `delay` seconds, waking early if the pool is stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _retry_delay(self, failures: int) -> float:
        return min(self.poll_interval * 2 ** (failures - 1), self.max_retry_interval)
