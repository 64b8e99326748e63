"""
CI Common module.

This module contains shared domain models, the error taxonomy and the
collaborator interfaces used across the CI runner components (engine,
dispatch client, local CLI).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    InvalidTransitionError,
    MissingVariableError,
    RunnerError,
    SetupError,
    TransientSourceError,
    WorkspaceError,
)
from .interfaces import EventSink, JobSource, ReportSink
from .models import (
    ExecutionOutcome,
    Job,
    JobEvent,
    JobState,
    OutcomeKind,
    StepResult,
    Workspace,
)

__all__ = [
    "EventSink",
    "ExecutionOutcome",
    "InvalidTransitionError",
    "Job",
    "JobEvent",
    "JobSource",
    "JobState",
    "MissingVariableError",
    "OutcomeKind",
    "ReportSink",
    "RunnerError",
    "SetupError",
    "StepResult",
    "TransientSourceError",
    "Workspace",
    "WorkspaceError",
]
