"""
CI Client module.

HTTP client for the job dispatch service, plus the adapters that plug it
into the runner engine as a job source and a report sink.
"""

from .client import DispatchClient, HTTPJobSource, HTTPReportSink

__all__ = ["DispatchClient", "HTTPJobSource", "HTTPReportSink"]
