"""
Unit tests for ci_client.client module.

Tests the dispatch client and its async adapters with a mocked
requests session.
"""

from unittest.mock import Mock

import pytest
import requests

from ci_client.client import DispatchClient, HTTPJobSource, HTTPReportSink
from ci_common.errors import TransientSourceError
from ci_common.models import ExecutionOutcome, StepResult

JOB_PAYLOAD = {
    "id": 1234,
    "variables": [
        {"key": "CI_PROJECT_URL", "value": "https://x/y.git"},
        {"key": "CI_COMMIT_SHA", "value": "abc123"},
        {"key": "CI_PROJECT_TITLE", "value": "y"},
    ],
    "script": ["git clone $CI_PROJECT_URL"],
    "phase": "script",
}


def make_response(status_code, json_data=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json = Mock(return_value=json_data)
    if status_code >= 400:
        response.raise_for_status = Mock(
            side_effect=requests.exceptions.HTTPError(f"{status_code} Error")
        )
    else:
        response.raise_for_status = Mock()
    return response


class TestDispatchClient:
    """Test suite for DispatchClient class."""

    @pytest.fixture
    def session(self):
        return Mock(spec=requests.Session)

    @pytest.fixture
    def client(self, session):
        return DispatchClient("http://ci.example.com/", "runner-token", session=session)

    def test_request_job_returns_job(self, client, session):
        """Test that a 201 response is parsed into a Job."""
        session.post.return_value = make_response(201, JOB_PAYLOAD)

        job = client.request_job()

        assert job.id == "1234"
        assert job.variable("CI_COMMIT_SHA") == "abc123"
        assert job.script == ("git clone $CI_PROJECT_URL",)

        args, kwargs = session.post.call_args
        assert args[0] == "http://ci.example.com/api/v1/jobs/request"
        assert kwargs["json"]["token"] == "runner-token"
        assert kwargs["json"]["info"]["name"] == "ci-runner"
        assert kwargs["timeout"] == 30.0

    def test_request_job_no_content(self, client, session):
        """Test that 204 means no job is available."""
        session.post.return_value = make_response(204)

        assert client.request_job() is None

    def test_request_job_server_error(self, client, session):
        """Test that unexpected status codes are transient errors."""
        session.post.return_value = make_response(502, text="Bad Gateway")

        with pytest.raises(TransientSourceError) as exc_info:
            client.request_job()

        assert "502" in str(exc_info.value)

    def test_request_job_network_error(self, client, session):
        """Test that connection errors are transient errors."""
        session.post.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(TransientSourceError):
            client.request_job()

    def test_request_job_malformed_payload(self, client, session):
        """Test that a job without id is reported as a transient error."""
        session.post.return_value = make_response(201, {"script": ["true"]})

        with pytest.raises(TransientSourceError):
            client.request_job()

    def test_update_job_payload(self, client, session):
        """Test that the final state, reason and trace are sent."""
        session.put.return_value = make_response(200)
        outcome = ExecutionOutcome.failed(
            1,
            "command exited with status 1",
            (StepResult(index=0, command="true", exit_code=0),),
        )

        client.update_job("1234", outcome, "trace text")

        args, kwargs = session.put.call_args
        assert args[0] == "http://ci.example.com/api/v1/jobs/1234"
        payload = kwargs["json"]
        assert payload["token"] == "runner-token"
        assert payload["state"] == "failed"
        assert payload["failure_reason"] == "command exited with status 1"
        assert payload["step_index"] == 1
        assert payload["trace"] == "trace text"

    def test_update_job_error(self, client, session):
        """Test that rejected updates raise RuntimeError."""
        session.put.return_value = make_response(500)

        with pytest.raises(RuntimeError):
            client.update_job("1234", ExecutionOutcome.success(), "")


class TestAdapters:
    """Test suite for HTTPJobSource and HTTPReportSink."""

    @pytest.mark.asyncio
    async def test_job_source_delegates(self):
        client = Mock(spec=DispatchClient)
        client.request_job.return_value = None
        source = HTTPJobSource(client)

        assert await source.next_job() is None
        client.request_job.assert_called_once()

    @pytest.mark.asyncio
    async def test_job_source_propagates_transient_errors(self):
        client = Mock(spec=DispatchClient)
        client.request_job.side_effect = TransientSourceError("down")
        source = HTTPJobSource(client)

        with pytest.raises(TransientSourceError):
            await source.next_job()

    @pytest.mark.asyncio
    async def test_report_sink_retries(self):
        """Test that a failed report is retried before succeeding."""
        client = Mock(spec=DispatchClient)
        client.update_job.side_effect = [RuntimeError("timeout"), None]
        sink = HTTPReportSink(client, attempts=3, retry_interval=0.01)

        await sink.report("1", ExecutionOutcome.success(), "log")

        assert client.update_job.call_count == 2

    @pytest.mark.asyncio
    async def test_report_sink_gives_up(self):
        """Test that the last failure is raised once attempts run out."""
        client = Mock(spec=DispatchClient)
        client.update_job.side_effect = RuntimeError("down")
        sink = HTTPReportSink(client, attempts=2, retry_interval=0.01)

        with pytest.raises(RuntimeError):
            await sink.report("1", ExecutionOutcome.success(), "log")

        assert client.update_job.call_count == 2
