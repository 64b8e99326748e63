"""
Unit tests for ci_runner.steps.

These tests run real /bin/sh child processes inside temporary workspaces.
"""

import asyncio
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from ci_common.models import Job, JobEvent, OutcomeKind, Workspace
from ci_runner.steps import StepRunner

VARIABLES = {"URL": "https://x/y.git", "SHA": "abc123", "TITLE": "y"}

# Stand-ins for "clone URL", "reset --hard SHA in TITLE" and "test in TITLE"
CLONE = 'mkdir "$TITLE" && echo "$URL" > "$TITLE/origin"'
RESET = 'cd "$TITLE" && echo "$SHA" > HEAD'
TEST = 'cd "$TITLE" && test "$(cat HEAD)" = abc123 && touch tested'


class EventRecorder:
    """Collects events passed to on_event."""

    def __init__(self):
        self.events: list[JobEvent] = []
        self.started = asyncio.Event()

    async def __call__(self, event: JobEvent) -> None:
        self.events.append(event)
        if event.type == "step_started":
            self.started.set()

    def of_type(self, event_type: str) -> list[JobEvent]:
        return [e for e in self.events if e.type == event_type]

    def output(self) -> str:
        return "".join(e.data or "" for e in self.of_type("log"))


class TestStepRunner:
    """Test suite for StepRunner class."""

    @pytest.fixture
    def workspace(self, tmp_path):
        """Create a workspace in a temporary directory."""
        return Workspace(job_id="job-1", path=tmp_path)

    @pytest.fixture
    def runner(self):
        """Create a StepRunner with a short termination grace period."""
        return StepRunner(terminate_timeout=1.0)

    @pytest.mark.asyncio
    async def test_all_steps_succeed(self, runner, workspace):
        """Test that a clone/reset/test script succeeds with results in order."""
        job = Job(id="job-1", variables=VARIABLES, script=[CLONE, RESET, TEST])

        outcome = await runner.run_steps(workspace, job)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert [r.index for r in outcome.results] == [0, 1, 2]
        assert [r.command for r in outcome.results] == [CLONE, RESET, TEST]
        assert all(r.exit_code == 0 for r in outcome.results)
        assert (workspace.path / "y" / "origin").read_text() == "https://x/y.git\n"
        assert (workspace.path / "y" / "tested").exists()

    @pytest.mark.asyncio
    async def test_failure_stops_remaining_steps(self, runner, workspace):
        """Test that a failing step short-circuits the script."""
        job = Job(
            id="job-1",
            variables=VARIABLES,
            script=[CLONE, 'cd "$TITLE" && exit 1', TEST],
        )

        outcome = await runner.run_steps(workspace, job)

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.step_index == 1
        assert outcome.reason == "command exited with status 1"
        assert len(outcome.results) == 2
        assert outcome.results[1].exit_code == 1
        assert not (workspace.path / "y" / "tested").exists()

    @pytest.mark.asyncio
    async def test_missing_variable_spawns_no_process(self, runner, workspace):
        """Test that a missing variable is a setup error before any spawn."""
        variables = {k: v for k, v in VARIABLES.items() if k != "SHA"}
        job = Job(id="job-1", variables=variables, script=[CLONE, RESET, TEST])

        with patch("asyncio.create_subprocess_exec") as mock_exec:
            outcome = await runner.run_steps(workspace, job)

        mock_exec.assert_not_called()
        assert outcome.kind is OutcomeKind.SETUP_ERROR
        assert "SHA" in outcome.reason
        assert outcome.results == ()
        assert list(workspace.path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_shell_local_names_need_no_job_variable(
        self, runner, workspace, monkeypatch
    ):
        """Test that loop, assigned, inherited and single-quoted names just run."""
        monkeypatch.setenv("CI_TEST_INHERITED", "yes")
        recorder = EventRecorder()
        job = Job(
            id="job-1",
            script=[
                "for f in a b; do echo $f; done",
                "X=1; echo $X",
                "echo $CI_TEST_INHERITED",
                "echo '$LITERAL'",
            ],
        )

        outcome = await runner.run_steps(workspace, job, on_event=recorder)

        assert outcome.kind is OutcomeKind.SUCCESS, outcome.reason
        assert recorder.output() == "a\nb\n1\nyes\n$LITERAL\n"

    @pytest.mark.asyncio
    async def test_inherited_name_missing_without_inheritance(self, workspace, monkeypatch):
        monkeypatch.setenv("CI_TEST_INHERITED", "yes")
        runner = StepRunner(inherit_environment=False)
        job = Job(id="job-1", script=["echo $CI_TEST_INHERITED"])

        outcome = await runner.run_steps(workspace, job)

        assert outcome.kind is OutcomeKind.SETUP_ERROR
        assert "CI_TEST_INHERITED" in outcome.reason

    @pytest.mark.asyncio
    async def test_launch_failure_is_step_failure(self, workspace):
        """Test that a command that cannot be launched fails its step."""
        runner = StepRunner(shell="/nonexistent/shell")
        job = Job(id="job-1", script=["true", "true"])

        outcome = await runner.run_steps(workspace, job)

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.step_index == 0
        assert "failed to launch" in outcome.reason
        assert len(outcome.results) == 1
        assert outcome.results[0].exit_code is None

    @pytest.mark.asyncio
    async def test_commands_run_in_workspace(self, runner, workspace):
        """Test that the workspace is the working directory."""
        job = Job(id="job-1", script=["pwd"])

        outcome = await runner.run_steps(workspace, job)

        assert Path(outcome.results[0].output.strip()).resolve() == workspace.path.resolve()

    @pytest.mark.asyncio
    async def test_variables_exported_to_environment(self, workspace):
        """Test that job variables reach the command through its environment."""
        runner = StepRunner(inherit_environment=False)
        job = Job(id="job-1", variables={"GREETING": "hello; rm -rf /"}, script=['echo "$GREETING"'])

        outcome = await runner.run_steps(workspace, job)

        assert outcome.results[0].output == "hello; rm -rf /\n"

    @pytest.mark.asyncio
    async def test_output_streamed_in_order(self, runner, workspace):
        """Test that output events preserve command and stream order."""
        recorder = EventRecorder()
        job = Job(
            id="job-1",
            script=["echo one; echo two >&2; echo three", "echo four"],
        )

        outcome = await runner.run_steps(workspace, job, on_event=recorder)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert recorder.output() == "one\ntwo\nthree\nfour\n"
        assert outcome.results[0].output == "one\ntwo\nthree\n"

        types = [e.type for e in recorder.events if e.type != "log"]
        assert types == ["step_started", "step_finished", "step_started", "step_finished"]
        steps = [e.step for e in recorder.of_type("log")]
        assert steps == sorted(steps)

    @pytest.mark.asyncio
    async def test_steps_are_sequential(self, runner, workspace):
        """Test that a step starts only after the previous one finished."""
        job = Job(
            id="job-1",
            script=[
                "sleep 0.2; touch first_done",
                "test -f first_done && touch second_ran",
            ],
        )

        outcome = await runner.run_steps(workspace, job)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert (workspace.path / "second_ran").exists()

    @pytest.mark.asyncio
    async def test_cancel_terminates_running_process(self, runner, workspace):
        """Test that cancellation kills the current command and skips the rest."""
        cancel_event = asyncio.Event()
        recorder = EventRecorder()
        job = Job(id="job-1", script=["echo started; sleep 30", "touch after"])

        task = asyncio.create_task(
            runner.run_steps(workspace, job, cancel_event, on_event=recorder)
        )
        await asyncio.wait_for(recorder.started.wait(), timeout=5)
        await asyncio.sleep(0.2)

        start = time.monotonic()
        cancel_event.set()
        outcome = await asyncio.wait_for(task, timeout=10)

        assert time.monotonic() - start < 5
        assert outcome.kind is OutcomeKind.CANCELED
        assert outcome.step_index == 0
        assert len(outcome.results) == 1
        assert outcome.results[0].output == "started\n"
        assert not (workspace.path / "after").exists()

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, runner, workspace):
        """Test that a job canceled up front runs nothing."""
        cancel_event = asyncio.Event()
        cancel_event.set()
        job = Job(id="job-1", script=["touch ran"])

        outcome = await runner.run_steps(workspace, job, cancel_event)

        assert outcome.kind is OutcomeKind.CANCELED
        assert outcome.step_index == 0
        assert outcome.results == ()
        assert not (workspace.path / "ran").exists()

    @pytest.mark.asyncio
    async def test_task_cancellation_kills_process(self, runner, workspace):
        """Test that cancelling the awaiting task kills the child and propagates."""
        recorder = EventRecorder()
        job = Job(id="job-1", script=["sleep 30; touch finished"])

        task = asyncio.create_task(runner.run_steps(workspace, job, on_event=recorder))
        await asyncio.wait_for(recorder.started.wait(), timeout=5)
        await asyncio.sleep(0.2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not (workspace.path / "finished").exists()

    @pytest.mark.asyncio
    async def test_cancellation_during_launch_kills_process(self, runner, workspace):
        """Test that a process spawned after the task was cancelled is terminated."""
        create_subprocess_exec = asyncio.create_subprocess_exec
        spawned = []

        async def slow_launch(*args, **kwargs):
            process = await create_subprocess_exec(*args, **kwargs)
            spawned.append(process)
            await asyncio.sleep(0.5)
            return process

        job = Job(id="job-1", script=["sleep 30; touch finished"])
        with patch("asyncio.create_subprocess_exec", slow_launch):
            task = asyncio.create_task(runner.run_steps(workspace, job))
            while not spawned:
                await asyncio.sleep(0.01)
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert spawned[0].returncode is not None
        assert not (workspace.path / "finished").exists()

    @pytest.mark.asyncio
    async def test_empty_script_succeeds(self, runner, workspace):
        """Test that a job with no commands succeeds trivially."""
        outcome = await runner.run_steps(workspace, Job(id="job-1"))

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.results == ()
