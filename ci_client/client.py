"""
HTTP client for the job dispatch service.

The runner only needs a minimal polling contract:

    POST {server}/api/v1/jobs/request   -> 201 + job JSON, or 204 when idle
    PUT  {server}/api/v1/jobs/{job_id}  <- final state, failure reason, trace

DispatchClient speaks it synchronously with requests; HTTPJobSource and
HTTPReportSink adapt it to the engine's async interfaces by running the
blocking calls in a worker thread.
"""

import asyncio
import logging
import platform
from typing import Any

import requests

from ci_common.errors import TransientSourceError
from ci_common.interfaces import JobSource, ReportSink
from ci_common.models import ExecutionOutcome, Job

logger = logging.getLogger(__name__)

RUNNER_NAME = "ci-runner"
RUNNER_VERSION = "0.1.0"


class DispatchClient:
    """Synchronous client for the dispatch service's job endpoints."""

    def __init__(
        self,
        server_url: str,
        token: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the dispatch client.

        Args:
            server_url: Base URL of the dispatch service
            token: Runner authentication token
            timeout: Seconds before an HTTP request is abandoned
            session: Optional requests session (for connection reuse or tests)
        """
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _runner_info(self) -> dict[str, str]:
        return {
            "name": RUNNER_NAME,
            "version": RUNNER_VERSION,
            "platform": platform.system().lower(),
            "architecture": platform.machine(),
        }

    def request_job(self) -> Job | None:
        """
        Ask the dispatch service for a job.

        Returns:
            Job if one was assigned to this runner, None otherwise

        Raises:
            TransientSourceError: On network errors, unexpected status
                codes or malformed job payloads
        """
        try:
            response = self.session.post(
                f"{self.server_url}/api/v1/jobs/request",
                json={"token": self.token, "info": self._runner_info()},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientSourceError(f"Error contacting dispatch service: {e}") from e

        if response.status_code == 204:
            return None
        if response.status_code != 201:
            raise TransientSourceError(
                f"Job request failed: {response.status_code} {response.text[:200]}"
            )

        try:
            return Job.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise TransientSourceError(f"Invalid job payload: {e}") from e

    def update_job(
        self, job_id: str, outcome: ExecutionOutcome, transcript: str
    ) -> None:
        """
        Send a job's final state and trace to the dispatch service.

        Args:
            job_id: Job identifier
            outcome: Terminal outcome of the job
            transcript: Full log transcript

        Raises:
            RuntimeError: If the update is rejected or cannot be delivered
        """
        payload: dict[str, Any] = {"token": self.token, "trace": transcript}
        payload.update(outcome.to_dict())
        try:
            response = self.session.put(
                f"{self.server_url}/api/v1/jobs/{job_id}",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise RuntimeError(f"Error updating job {job_id}: {e}") from e

    def close(self) -> None:
        self.session.close()


class HTTPJobSource(JobSource):
    """Job source that polls the dispatch service."""

    def __init__(self, client: DispatchClient):
        self.client = client

    async def next_job(self) -> Job | None:
        job = await asyncio.to_thread(self.client.request_job)
        if job is not None:
            logger.info(f"Received job {job.id} ({len(job.script)} steps)")
        return job

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)


class HTTPReportSink(ReportSink):
    """
    Report sink that sends outcomes to the dispatch service.

    Delivery is retried a few times since a lost report leaves the job
    hanging on the server side.
    """

    def __init__(
        self, client: DispatchClient, attempts: int = 3, retry_interval: float = 2.0
    ):
        self.client = client
        self.attempts = attempts
        self.retry_interval = retry_interval

    async def report(
        self, job_id: str, outcome: ExecutionOutcome, transcript: str
    ) -> None:
        for attempt in range(1, self.attempts + 1):
            try:
                await asyncio.to_thread(self.client.update_job, job_id, outcome, transcript)
                return
            except RuntimeError as e:
                if attempt == self.attempts:
                    raise
                logger.warning(
                    f"Report for job {job_id} failed (attempt {attempt}): {e}"
                )
                await asyncio.sleep(self.retry_interval)
