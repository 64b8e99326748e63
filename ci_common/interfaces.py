"""
Abstract interfaces for the runner's external collaborators.

The engine only talks to the job dispatch service through these
contracts, so any concrete transport (long-poll, REST, gRPC stream, a
local file) can be plugged in behind them.
"""

from abc import ABC, abstractmethod

from .models import ExecutionOutcome, Job, JobEvent


class JobSource(ABC):
    """
    Supplier of jobs to execute.

    Implementations must be safe to call repeatedly, including right after
    a call raised TransientSourceError.
    """

    @abstractmethod
    async def next_job(self) -> Job | None:
        """
        Request the next job.

        Returns:
            The next Job, or None if no job is currently available

        Raises:
            TransientSourceError: If the source could not be reached
        """
        pass

    async def close(self) -> None:
        """Release transport resources. Called once when the runner stops."""
        pass


class ReportSink(ABC):
    """Consumer of final job outcomes and logs."""

    @abstractmethod
    async def report(
        self, job_id: str, outcome: ExecutionOutcome, transcript: str
    ) -> None:
        """
        Report a job's terminal outcome.

        Called exactly once per job, after its workspace has been released.

        Args:
            job_id: Identifier of the finished job
            outcome: Terminal outcome
            transcript: Full log transcript of the job
        """
        pass


class EventSink(ABC):
    """Receiver of live job events (state changes, step boundaries, output)."""

    @abstractmethod
    async def emit(self, job_id: str, event: JobEvent) -> None:
        """
        Deliver one event.

        Events of a single job are delivered in the order they happened.
        """
        pass
