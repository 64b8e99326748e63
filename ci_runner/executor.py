"""
Job executor: drives one job through its state machine.

    pending -> provisioning -> running -> finalizing -> terminal

Provisioning acquires the workspace, running delegates to the step
runner, finalizing is reached only when every step succeeded. Whatever
happens, the terminal state releases the workspace and then reports the
outcome exactly once.
"""

import asyncio
import dataclasses
import logging
import time

from ci_common.errors import InvalidTransitionError, WorkspaceError
from ci_common.interfaces import EventSink, ReportSink
from ci_common.models import (
    ExecutionOutcome,
    Job,
    JobEvent,
    JobState,
    OutcomeKind,
    Workspace,
)

from .steps import StepRunner
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.PROVISIONING},
    JobState.PROVISIONING: {JobState.RUNNING, JobState.TERMINAL},
    JobState.RUNNING: {JobState.FINALIZING, JobState.TERMINAL},
    JobState.FINALIZING: {JobState.TERMINAL},
    JobState.TERMINAL: set(),
}


class JobExecutor:
    """
    Executes a single job from workspace acquisition to final report.

    An executor is used for exactly one job and run() may be called once.
    All job-scoped failures are converted into a terminal outcome; only
    cancellation of the executor's own task propagates out of run().
    """

    def __init__(
        self,
        job: Job,
        workspace_manager: WorkspaceManager,
        step_runner: StepRunner,
        report_sink: ReportSink,
        event_sink: EventSink | None = None,
    ):
        """
        Initialize the job executor.

        Args:
            job: Job to execute
            workspace_manager: Provides the job's workspace
            step_runner: Runs the job's script
            report_sink: Receives the terminal outcome and transcript
            event_sink: Optional receiver of live job events
        """
        self.job = job
        self.workspace_manager = workspace_manager
        self.step_runner = step_runner
        self.report_sink = report_sink
        self.event_sink = event_sink

        self.state = JobState.PENDING
        self.cancel_event = asyncio.Event()
        self.outcome: ExecutionOutcome | None = None
        self.provisioning_error: WorkspaceError | None = None
        self._transcript: list[str] = []
        self._timed_out = False

    @property
    def job_id(self) -> str:
        return self.job.id

    def cancel(self) -> None:
        """Request cooperative cancellation of the job."""
        if not self.cancel_event.is_set():
            logger.info(f"Cancellation requested for job {self.job_id}")
            self.cancel_event.set()

    async def run(self) -> ExecutionOutcome:
        """
        Run the job to a terminal state.

        Returns:
            The terminal outcome (also passed to the report sink)

        Raises:
            asyncio.CancelledError: If the executor task itself was
                cancelled; cleanup and reporting still happen first
        """
        if self.state is not JobState.PENDING:
            raise InvalidTransitionError(f"Job {self.job_id} has already been run")

        start = time.monotonic()
        workspace: Workspace | None = None
        outcome: ExecutionOutcome | None = None
        timer = self._start_timer()

        try:
            await self._transition(JobState.PROVISIONING)
            try:
                workspace = await self.workspace_manager.acquire(self.job_id)
            except WorkspaceError as e:
                logger.error(str(e))
                self.provisioning_error = e
                outcome = ExecutionOutcome.setup_error(str(e))
            else:
                await self._transition(JobState.RUNNING)
                outcome = await self.step_runner.run_steps(
                    workspace, self.job, self.cancel_event, on_event=self._on_step_event
                )
                if outcome.kind is OutcomeKind.SUCCESS:
                    await self._transition(JobState.FINALIZING)
                    outcome = dataclasses.replace(
                        outcome, duration=time.monotonic() - start
                    )
        except asyncio.CancelledError:
            outcome = ExecutionOutcome.canceled(reason="runner shutting down")
            raise
        except Exception as e:
            logger.error(f"Internal error while running job {self.job_id}: {e}", exc_info=True)
            outcome = ExecutionOutcome.failed(None, f"internal error: {e}")
        finally:
            if timer is not None:
                timer.cancel()
            outcome = self._apply_timeout(outcome)
            outcome = dataclasses.replace(outcome, duration=time.monotonic() - start)
            await self._finish(workspace, outcome)

        return outcome

    async def _finish(
        self, workspace: Workspace | None, outcome: ExecutionOutcome
    ) -> None:
        """Terminal state: release the workspace, then report once."""
        if workspace is not None:
            await self.workspace_manager.release(workspace)

        self.outcome = outcome
        self._append(f"{outcome.describe()}\n", line=True)
        if self.state is not JobState.TERMINAL:
            await self._transition(JobState.TERMINAL)
        await self._emit(JobEvent(type="complete", data=outcome.kind.value))

        logger.info(f"Job {self.job_id} finished: {outcome.describe()}")
        try:
            await self.report_sink.report(self.job_id, outcome, self.transcript)
        except Exception as e:
            logger.error(f"Failed to report outcome of job {self.job_id}: {e}", exc_info=True)

    @property
    def transcript(self) -> str:
        """Full log transcript assembled so far."""
        return "".join(self._transcript)

    def _start_timer(self) -> asyncio.TimerHandle | None:
        if self.job.timeout is None:
            return None
        return asyncio.get_running_loop().call_later(self.job.timeout, self._on_timeout)

    def _on_timeout(self) -> None:
        logger.warning(f"Job {self.job_id} exceeded its timeout of {self.job.timeout}s")
        self._timed_out = True
        self.cancel_event.set()

    def _apply_timeout(self, outcome: ExecutionOutcome | None) -> ExecutionOutcome:
        if outcome is None:
            return ExecutionOutcome.failed(None, "internal error: no outcome")
        if self._timed_out and outcome.kind is OutcomeKind.CANCELED:
            return ExecutionOutcome.failed(
                outcome.step_index,
                f"job timed out after {self.job.timeout}s",
                outcome.results,
            )
        return outcome

    async def _transition(self, new_state: JobState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.job_id}: cannot go from {self.state.value} to {new_state.value}"
            )
        logger.debug(f"Job {self.job_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        await self._emit(JobEvent(type="state", data=new_state.value))

    async def _on_step_event(self, event: JobEvent) -> None:
        if event.type == "step_started":
            self._append(f"$ {event.data}\n", line=True)
        elif event.type == "log" and event.data:
            self._append(event.data)
        await self._emit(event)

    def _append(self, text: str, line: bool = False) -> None:
        # Header and trailer lines always start on a fresh line
        if line and self._transcript and not self._transcript[-1].endswith("\n"):
            self._transcript.append("\n")
        self._transcript.append(text)

    async def _emit(self, event: JobEvent) -> None:
        if self.event_sink is None:
            return
        try:
            await self.event_sink.emit(self.job_id, event)
        except Exception as e:
            logger.warning(f"Event sink failed for job {self.job_id}: {e}")
