"""
CI Runner module.

This module contains the job execution engine: the worker pool that
admits jobs under a concurrency ceiling, the per-job executor state
machine, the step runner and the workspace manager.

The engine only depends on ci_common; job sources and report sinks are
injected, so it can run against the HTTP dispatch client, a local job
file, or an in-memory queue.
"""

from .executor import JobExecutor
from .pool import WorkerPool
from .steps import StepRunner
from .workspace import WorkspaceManager

__all__ = ["JobExecutor", "StepRunner", "WorkerPool", "WorkspaceManager"]
