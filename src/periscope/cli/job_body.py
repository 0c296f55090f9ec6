# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Job body for the tunnel allocation.

This script is exec'd by the sbatch script and runs for the lifetime of the
allocation:
1. Sweep stale editor processes and locks on this node
2. Start sshd on the requested port with the cluster host key
3. Block on sshd
4. On SIGUSR1 (time limit approaching), SIGTERM (scancel) or SIGINT, stop
   sshd, sweep again and exit before Slurm's hard kill
"""

import argparse
import getpass
import logging
import os
import signal
import socket
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from periscope.core.job_spec import STATE_DIR_ENV_VAR
from periscope.core.models import ShutdownReason
from periscope.core.polling import wait_for_port
from periscope.core.remote import LocalRunner
from periscope.core.slurm import get_slurm_job_id, get_slurm_job_name
from periscope.core.sweeper import DEFAULT_STATE_DIR, ProcessSweeper
from periscope.logging_utils import setup_logging

logger = logging.getLogger(__name__)

SIGNAL_REASONS = {
    signal.SIGUSR1: ShutdownReason.PREEMPTION_IMMINENT,
    signal.SIGTERM: ShutdownReason.TERMINATION_REQUESTED,
    signal.SIGINT: ShutdownReason.INTERRUPTED,
}


class JobState(Enum):
    INIT = "init"
    SWEEP_LOCAL = "sweep_local"
    START_ENDPOINT = "start_endpoint"
    RUNNING = "running"
    GRACEFUL_SHUTDOWN = "graceful_shutdown"
    ENDPOINT_EXITED = "endpoint_exited"
    TERMINATED = "terminated"


class ShutdownRequested(BaseException):
    """Raised from the signal handler to break out of the blocking wait.

    BaseException so that ``except Exception`` blocks (e.g. in the sweeper)
    cannot swallow it.
    """

    def __init__(self, reason: ShutdownReason):
        super().__init__(reason.value)
        self.reason = reason


def build_endpoint_command(sshd_path: str, port: int, host_key: str) -> list[str]:
    """sshd in the foreground, no system config, logging to stderr (the job log)."""
    return [sshd_path, "-D", "-e", "-p", str(port), "-f", "/dev/null", "-h", host_key]


def exit_status(returncode: int) -> int:
    """Map a Popen returncode to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def terminate_process(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives ``grace`` seconds."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Endpoint (PID %d) ignored SIGTERM for %.0fs, killing it", proc.pid, grace)
        proc.kill()
        proc.wait()


@dataclass
class AllocationJobBody:
    """State machine run inside the granted allocation.

    Usage:
        body = AllocationJobBody(owner="bsmith", port=4582, endpoint_command=cmd, sweeper=sweeper)
        sys.exit(body.run())
    """

    owner: str
    port: int
    endpoint_command: list[str]
    sweeper: ProcessSweeper
    shutdown_grace: float = 30.0
    ready_timeout: float = 10.0

    state: JobState = field(default=JobState.INIT, init=False)
    history: list[JobState] = field(default_factory=lambda: [JobState.INIT], init=False)
    shutdown_reason: ShutdownReason | None = field(default=None, init=False)
    endpoint: subprocess.Popen | None = field(default=None, init=False, repr=False)
    _defer_signals: bool = field(default=False, init=False, repr=False)

    def run(self) -> int:
        """Run the job body to completion and return the exit status."""
        previous = {signum: signal.signal(signum, self._handle_signal) for signum in SIGNAL_REASONS}
        try:
            return self._run()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            self._transition(JobState.TERMINATED)

    def _run(self) -> int:
        try:
            self._transition(JobState.SWEEP_LOCAL)
            self.sweeper.cleanup(None, self.owner)

            self._transition(JobState.START_ENDPOINT)
            logger.info("Starting endpoint on port %d: %s", self.port, " ".join(self.endpoint_command))
            # Held until the endpoint handle is recorded, so shutdown() can stop it
            self._defer_signals = True
            try:
                self.endpoint = subprocess.Popen(self.endpoint_command)
            except OSError as e:
                logger.error("Failed to start endpoint: %s", e)
                return self._finish(1)
            self._resume_signals()
            self._await_ready()

            self._transition(JobState.RUNNING)
            logger.info("Endpoint running (PID %d). Waiting...", self.endpoint.pid)
            returncode = self.endpoint.wait()
            # The final sweep must run to completion
            self._defer_signals = True
        except ShutdownRequested as e:
            return self.shutdown(e.reason)

        self._transition(JobState.ENDPOINT_EXITED)
        logger.warning("Endpoint exited on its own with status %d", returncode)
        return self._finish(exit_status(returncode))

    def _resume_signals(self) -> None:
        self._defer_signals = False
        if self.shutdown_reason is not None:
            raise ShutdownRequested(self.shutdown_reason)

    def _finish(self, status: int) -> int:
        """Sweep after the endpoint is gone, then honor any signal that arrived meanwhile."""
        self.sweeper.cleanup(None, self.owner)
        if self.shutdown_reason is not None:
            return self.shutdown(self.shutdown_reason)
        return status

    def shutdown(self, reason: ShutdownReason) -> int:
        """Single shutdown path for every trigger: stop the endpoint, sweep, exit 0."""
        self.shutdown_reason = self.shutdown_reason or reason
        self._transition(JobState.GRACEFUL_SHUTDOWN)
        logger.warning("Shutdown: %s. Performing clean shutdown...", reason.value)

        if self.endpoint is not None:
            terminate_process(self.endpoint, self.shutdown_grace)
            logger.info("Endpoint stopped")

        self.sweeper.cleanup(None, self.owner)
        logger.info("Clean shutdown complete")
        return 0

    def _handle_signal(self, signum: int, frame) -> None:
        name = signal.Signals(signum).name
        if self.shutdown_reason is not None:
            logger.info("Received %s while already shutting down, ignoring", name)
            return
        reason = SIGNAL_REASONS.get(signum, ShutdownReason.TERMINATION_REQUESTED)
        self.shutdown_reason = reason
        if self._defer_signals:
            logger.warning("Received %s (%s), deferred", name, reason.value)
            return
        logger.warning("Received %s (%s)", name, reason.value)
        raise ShutdownRequested(reason)

    def _await_ready(self) -> None:
        assert self.endpoint is not None
        endpoint = self.endpoint
        if wait_for_port(
            "127.0.0.1",
            self.port,
            timeout=self.ready_timeout,
            interval=0.2,
            keep_waiting=lambda: endpoint.poll() is None,
        ):
            logger.info("Endpoint is accepting connections on port %d", self.port)
            return
        if endpoint.poll() is None:
            logger.warning("Endpoint not accepting connections on port %d yet", self.port)

    def _transition(self, state: JobState) -> None:
        if state == self.state:
            return
        logger.debug("Job body state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the periscope tunnel endpoint inside a Slurm allocation")
    parser.add_argument("--name", type=str, default=None, help="Session (job) name, for logging")
    parser.add_argument("--owner", type=str, default=None, help="User whose stale processes are swept")
    parser.add_argument("--port", type=int, required=True, help="Port sshd listens on")
    parser.add_argument("--host-key", type=str, required=True, help="Host key file for sshd")
    parser.add_argument("--grace", type=float, default=30.0, help="Seconds sshd gets to exit on shutdown")
    parser.add_argument("--sshd", type=str, default="/usr/sbin/sshd", help="Path to sshd")
    parser.add_argument("--ready-timeout", type=float, default=10.0, help="Seconds to wait for the port to open")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    owner = args.owner or getpass.getuser()
    name = args.name or get_slurm_job_name() or "?"
    logger.info("Tunnel job %s (%s) starting on %s", get_slurm_job_id() or "?", name, socket.gethostname())

    state_dir = os.environ.get(STATE_DIR_ENV_VAR, DEFAULT_STATE_DIR)
    sweeper = ProcessSweeper(home_runner=LocalRunner(cwd=Path.home()), state_dir=state_dir)
    body = AllocationJobBody(
        owner=owner,
        port=args.port,
        endpoint_command=build_endpoint_command(args.sshd, args.port, args.host_key),
        sweeper=sweeper,
        shutdown_grace=args.grace,
        ready_timeout=args.ready_timeout,
    )

    try:
        exit_code = body.run()
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        exit_code = 1

    logger.info("Job body finished with exit code %d", exit_code)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
