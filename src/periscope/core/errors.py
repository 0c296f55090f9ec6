# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Error types raised by periscope.

Every failure that aborts a connect run is a PeriscopeError subclass carrying
enough context (job id, node, log path) to diagnose it without re-querying
the scheduler.
"""


class PeriscopeError(Exception):
    """Base class for all periscope errors."""


class ConfigurationError(PeriscopeError):
    """Missing or invalid configuration. Never retried."""


class ConnectivityError(PeriscopeError):
    """A remote host could not be reached (or did not answer in time)."""

    def __init__(self, message: str, host: str | None = None):
        super().__init__(message)
        self.host = host


class SchedulerError(PeriscopeError):
    """The scheduler rejected a request or a query failed."""

    def __init__(self, message: str, diagnostic: str = ""):
        if diagnostic:
            message = f"{message}: {diagnostic}"
        super().__init__(message)
        self.diagnostic = diagnostic


class SubmissionRejected(SchedulerError):
    """sbatch refused the new allocation."""


class AllocationTerminated(PeriscopeError):
    """The allocation reached a terminal state before becoming reachable."""

    def __init__(
        self,
        job_id: str,
        state: str,
        node: str | None = None,
        log_path: str | None = None,
    ):
        message = f"Job {job_id} ended before it became reachable (state: {state})"
        if log_path:
            message += f". Check the log at {log_path}"
        super().__init__(message)
        self.job_id = job_id
        self.state = state
        self.node = node
        self.log_path = log_path


class TimeoutExceeded(PeriscopeError):
    """Polling ran out of time while the allocation was still alive."""

    def __init__(
        self,
        job_id: str,
        timeout: float,
        state: str | None = None,
        log_path: str | None = None,
    ):
        message = f"Job {job_id} was not running after {timeout:.0f}s (last state: {state or 'unknown'})"
        if log_path:
            message += f". Log: {log_path}"
        super().__init__(message)
        self.job_id = job_id
        self.timeout = timeout
        self.state = state
        self.log_path = log_path
