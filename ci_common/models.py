"""
Data models for CI job execution.

These models represent the domain objects passed between the job source,
the runner engine and the report sink, independent of any transport.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping


class JobState(str, Enum):
    """Lifecycle states of a job inside its executor."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    FINALIZING = "finalizing"
    TERMINAL = "terminal"


class OutcomeKind(str, Enum):
    """Terminal outcome of a job."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    SETUP_ERROR = "setup_error"


@dataclass(frozen=True)
class Job:
    """
    A unit of work handed out by the job source.

    Variables and script are frozen on construction; a job is owned by
    exactly one executor for its whole lifetime.
    """

    id: str
    variables: Mapping[str, str] = field(default_factory=dict)
    script: tuple[str, ...] = ()
    phase: str = "script"  # Opaque label, passed through unchanged
    timeout: float | None = None  # Seconds for the whole job

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "variables", MappingProxyType(dict(self.variables))
        )
        object.__setattr__(self, "script", tuple(self.script))

    def variable(self, name: str) -> str | None:
        """Look up a job variable, returning None when absent."""
        return self.variables.get(name)

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary format (for JSON serialization)."""
        result: dict[str, Any] = {
            "id": self.id,
            "variables": dict(self.variables),
            "script": list(self.script),
            "phase": self.phase,
        }
        if self.timeout is not None:
            result["timeout"] = self.timeout
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """
        Create a job from dictionary format.

        Variables may be given either as a mapping or as a list of
        {"key": ..., "value": ...} entries.

        Raises:
            KeyError: If the job has no id
            ValueError: If script or variables are malformed
        """
        raw_variables = data.get("variables") or {}
        if isinstance(raw_variables, list):
            variables = {
                str(item["key"]): str(item["value"]) for item in raw_variables
            }
        elif isinstance(raw_variables, dict):
            variables = {str(k): str(v) for k, v in raw_variables.items()}
        else:
            raise ValueError(f"Invalid variables for job: {raw_variables!r}")

        script = data.get("script") or []
        if isinstance(script, str) or not all(isinstance(c, str) for c in script):
            raise ValueError("Job script must be a list of command strings")

        timeout = data.get("timeout")
        return cls(
            id=str(data["id"]),
            variables=variables,
            script=tuple(script),
            phase=str(data.get("phase", "script")),
            timeout=float(timeout) if timeout is not None else None,
        )


@dataclass(frozen=True)
class Workspace:
    """An isolated working directory bound to a single job."""

    job_id: str
    path: Path


@dataclass(frozen=True)
class StepResult:
    """Result of running one command of a job's script."""

    index: int
    command: str
    exit_code: int | None  # None if launch failed, negative if killed by a signal
    output: str = ""  # Combined stdout and stderr
    duration: float = 0.0
    error: str | None = None  # Launch error, if any

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "command": self.command,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Terminal result of a job, handed to the report sink.

    Use the constructors (success, failed, canceled, setup_error) rather
    than building instances directly.
    """

    kind: OutcomeKind
    step_index: int | None = None
    reason: str | None = None
    results: tuple[StepResult, ...] = ()
    duration: float = 0.0

    @classmethod
    def success(
        cls, results: tuple[StepResult, ...] = (), duration: float = 0.0
    ) -> "ExecutionOutcome":
        return cls(OutcomeKind.SUCCESS, results=results, duration=duration)

    @classmethod
    def failed(
        cls,
        step_index: int | None,
        reason: str,
        results: tuple[StepResult, ...] = (),
    ) -> "ExecutionOutcome":
        return cls(
            OutcomeKind.FAILED, step_index=step_index, reason=reason, results=results
        )

    @classmethod
    def canceled(
        cls,
        step_index: int | None = None,
        reason: str = "job canceled",
        results: tuple[StepResult, ...] = (),
    ) -> "ExecutionOutcome":
        return cls(
            OutcomeKind.CANCELED,
            step_index=step_index,
            reason=reason,
            results=results,
        )

    @classmethod
    def setup_error(cls, reason: str) -> "ExecutionOutcome":
        return cls(OutcomeKind.SETUP_ERROR, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def describe(self) -> str:
        """One-line human readable summary."""
        if self.kind is OutcomeKind.SUCCESS:
            return "Job succeeded"
        if self.kind is OutcomeKind.FAILED and self.step_index is not None:
            return f"Job failed at step {self.step_index}: {self.reason}"
        if self.kind is OutcomeKind.CANCELED:
            return f"Job canceled: {self.reason}"
        if self.kind is OutcomeKind.SETUP_ERROR:
            return f"Job setup error: {self.reason}"
        return f"Job failed: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        """Convert outcome to dictionary format (for API submission)."""
        return {
            "state": self.kind.value,
            "step_index": self.step_index,
            "failure_reason": self.reason,
            "duration": round(self.duration, 3),
            "steps": [result.to_dict() for result in self.results],
        }


@dataclass
class JobEvent:
    """
    Represents a single event in a job's lifecycle.

    Events are emitted during job execution (state changes, step
    boundaries, output chunks, completion).
    """

    type: str  # "state", "step_started", "log", "step_finished" or "complete"
    data: str | None = None  # State name, command, output chunk or outcome
    step: int | None = None  # Step index for step-scoped events
    exit_code: int | None = None  # Exit status for "step_finished"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        result: dict[str, Any] = {"type": self.type}
        if self.data is not None:
            result["data"] = self.data
        if self.step is not None:
            result["step"] = self.step
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        return result
