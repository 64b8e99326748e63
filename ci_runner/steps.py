"""
Step runner: executes a job's script inside its workspace.

Commands run one at a time as child processes of the configured shell,
with output streamed back as it is produced. The first failing command
stops the script.
"""

import asyncio
import codecs
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable

from ci_common.errors import MissingVariableError
from ci_common.models import ExecutionOutcome, Job, JobEvent, StepResult, Workspace

from .variables import build_environment, missing_variables

logger = logging.getLogger(__name__)

OnEvent = Callable[[JobEvent], Awaitable[None]]


class StepRunner:
    """
    Runs an ordered sequence of commands against a workspace.

    Each command is executed as "<shell> -c <command>" in a new session,
    so cancellation can signal the whole process group rather than just
    the shell.
    """

    def __init__(
        self,
        shell: str = "/bin/sh",
        terminate_timeout: float = 5.0,
        chunk_size: int = 4096,
        inherit_environment: bool = True,
    ):
        """
        Initialize the step runner.

        Args:
            shell: Shell used to interpret each command
            terminate_timeout: Seconds to wait after SIGTERM before SIGKILL
            chunk_size: Maximum bytes read from a process per output event
            inherit_environment: Pass the runner's environment to commands
                                 (job variables are always added on top)
        """
        self.shell = shell
        self.terminate_timeout = terminate_timeout
        self.chunk_size = chunk_size
        self.inherit_environment = inherit_environment

    async def run_steps(
        self,
        workspace: Workspace,
        job: Job,
        cancel_event: asyncio.Event | None = None,
        on_event: OnEvent | None = None,
    ) -> ExecutionOutcome:
        """
        Run every command of the job's script in order.

        Args:
            workspace: Workspace used as working directory
            job: Job providing the script and variables
            cancel_event: Set to request cancellation
            on_event: Receives step and output events as they happen

        Returns:
            success when all commands exit 0; failed(index) at the first
            failing command; canceled(index) when cancel_event was set;
            setup_error when a referenced variable is missing (no process
            is spawned in that case)
        """
        env = build_environment(job, inherit=self.inherit_environment)
        missing = missing_variables(job, env)
        if missing:
            error = MissingVariableError(job.id, missing)
            logger.warning(str(error))
            return ExecutionOutcome.setup_error(str(error))

        results: list[StepResult] = []

        for index, command in enumerate(job.script):
            if cancel_event is not None and cancel_event.is_set():
                return ExecutionOutcome.canceled(
                    index, "job canceled before step started", tuple(results)
                )

            await self._emit(
                on_event, JobEvent(type="step_started", data=command, step=index)
            )
            result, canceled = await self._run_step(
                index, command, workspace, env, cancel_event, on_event
            )
            results.append(result)
            await self._emit(
                on_event,
                JobEvent(
                    type="step_finished",
                    data=result.error,
                    step=index,
                    exit_code=result.exit_code,
                ),
            )

            if canceled:
                return ExecutionOutcome.canceled(index, "job canceled", tuple(results))
            if not result.succeeded:
                reason = result.error or f"command exited with status {result.exit_code}"
                return ExecutionOutcome.failed(index, reason, tuple(results))

        return ExecutionOutcome.success(tuple(results))

    async def _run_step(
        self,
        index: int,
        command: str,
        workspace: Workspace,
        env: dict[str, str],
        cancel_event: asyncio.Event | None,
        on_event: OnEvent | None,
    ) -> tuple[StepResult, bool]:
        """
        Run a single command.

        Returns:
            Tuple of (result, canceled)
        """
        start = time.monotonic()
        spawn = asyncio.ensure_future(
            asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                cwd=str(workspace.path),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        )
        try:
            process = await asyncio.shield(spawn)
        except asyncio.CancelledError:
            await self._abandon(spawn)
            raise
        except OSError as e:
            message = f"failed to launch command: {e}"
            logger.warning(f"Step {index} of job {workspace.job_id}: {message}")
            await self._emit(on_event, JobEvent(type="log", data=f"{message}\n", step=index))
            result = StepResult(
                index=index,
                command=command,
                exit_code=None,
                duration=time.monotonic() - start,
                error=message,
            )
            return result, False

        output: list[str] = []
        drain = asyncio.create_task(self._drain(process, index, output, on_event))
        canceled = False
        try:
            canceled = await self._wait_or_cancel(drain, cancel_event)
            if canceled:
                logger.info(f"Canceling step {index} of job {workspace.job_id}")
                await self._terminate(process)
                try:
                    # Keep the output the process produced before it died
                    await asyncio.wait_for(drain, timeout=self.terminate_timeout)
                except asyncio.TimeoutError:
                    self._signal_group(process, signal.SIGKILL)
        except BaseException:
            drain.cancel()
            await self._terminate(process)
            raise

        result = StepResult(
            index=index,
            command=command,
            exit_code=process.returncode,
            output="".join(output),
            duration=time.monotonic() - start,
        )
        return result, canceled

    async def _abandon(self, spawn: asyncio.Future) -> None:
        """Terminate a process whose launch finished after its step was cancelled."""
        try:
            process = await spawn
        except OSError:
            return
        await self._terminate(process)

    async def _drain(
        self,
        process: asyncio.subprocess.Process,
        index: int,
        output: list[str],
        on_event: OnEvent | None,
    ) -> None:
        """Stream a process's output until EOF, then wait for it to exit."""
        assert process.stdout is not None, "stdout should be available when PIPE is specified"

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stdout.read(self.chunk_size)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                output.append(text)
                await self._emit(on_event, JobEvent(type="log", data=text, step=index))
            if not chunk:
                break

        await process.wait()

    async def _wait_or_cancel(
        self, task: asyncio.Task, cancel_event: asyncio.Event | None
    ) -> bool:
        """
        Wait for a task to finish or for cancellation to be requested.

        Returns:
            True if cancellation won, False if the task finished first
        """
        if cancel_event is None:
            await task
            return False

        cancel_waiter = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_waiter.cancel()

        if task in done:
            task.result()
            return False
        return True

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate a command's process group, escalating to SIGKILL."""
        self._signal_group(process, signal.SIGTERM)
        if process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Process {process.pid} ignored SIGTERM for "
                f"{self.terminate_timeout}s, killing it"
            )
            self._signal_group(process, signal.SIGKILL)
            await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.returncode is None:
                process.send_signal(sig)

    @staticmethod
    async def _emit(on_event: OnEvent | None, event: JobEvent) -> None:
        if on_event is not None:
            await on_event(event)
