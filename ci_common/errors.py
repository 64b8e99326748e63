"""
Error taxonomy for the CI runner.

Step failures and cancellation are outcomes, not exceptions. The
exceptions here cover conditions that stop a job before any step runs,
job source communication problems, and internal state machine misuse.
"""


class RunnerError(Exception):
    """Base class for all runner errors."""


class SetupError(RunnerError):
    """A job prerequisite is missing; no step of the job may run."""


class MissingVariableError(SetupError):
    """A step references variables that the job does not define."""

    def __init__(self, job_id: str, names: list[str]):
        self.job_id = job_id
        self.names = list(names)
        joined = ", ".join(self.names)
        super().__init__(f"Job {job_id} references undefined variables: {joined}")


class WorkspaceError(SetupError):
    """The workspace directory for a job could not be created."""


class TransientSourceError(RunnerError):
    """Communication with the job source failed; the poll may be retried."""


class InvalidTransitionError(RunnerError):
    """A job executor attempted a state transition that is not allowed."""
