# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Best-effort cleanup of stale editor-server processes and lock files.

A lock file left in the shared home directory by a crashed or killed server
blocks every later server from starting, so sweeping happens on the node of
an allocation about to be cancelled, and again inside each new allocation
before its endpoint binds.

Nothing in this module raises: sweeping is advisory and must be callable on
nodes that are unreachable or already gone.
"""

import logging
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass

from periscope.core.errors import ConnectivityError
from periscope.core.remote import CommandRunner, LocalRunner

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".vscode-server"

# pkill: 0 = signalled something, 1 = nothing matched
PKILL_NO_MATCH = 1


@dataclass(frozen=True)
class SweepStep:
    """One cleanup command and what it is for."""

    description: str
    argv: tuple[str, ...]


def build_kill_steps(owner: str) -> list[SweepStep]:
    """Owner-scoped process kills.

    The primary binary is matched by exact name so unrelated processes that
    merely contain "code" survive. Server and IPC helpers are matched against
    the full command line; the bracketed first letter keeps the pattern from
    matching the command line of the shell running pkill.
    """
    return [
        SweepStep("vscode-server processes", ("pkill", "-u", owner, "-f", "[v]scode-server")),
        SweepStep("vscode-ipc processes", ("pkill", "-u", owner, "-f", "[v]scode-ipc")),
        SweepStep("code processes", ("pkill", "-u", owner, "-x", "code")),
        SweepStep(
            "IPC sockets",
            ("find", "/tmp", "-maxdepth", "1", "-user", owner, "-name", "vscode-ipc*", "-exec", "rm", "-rf", "{}", "+"),
        ),
    ]


def build_lock_steps(state_dir: str = DEFAULT_STATE_DIR) -> list[SweepStep]:
    """Lock marker removal under the session state directory."""
    return [
        SweepStep(
            "lock files",
            ("find", state_dir, "(", "-name", "*lock*", "-o", "-name", "SingletonLock*", ")", "-delete"),
        ),
    ]


class ProcessSweeper:
    """Kills stale endpoint processes and deletes lock artifacts.

    Args:
        node_runner: Builds a runner for a named compute node (None disables remote sweeps)
        home_runner: Runner with access to the owner's home directory: local inside
            an allocation, the login node from a workstation
        state_dir: Session state directory, relative to the owner's home
        attempts: Connection attempts per host before giving up
        retry_delay: Seconds between connection attempts
        timeout: Timeout for each cleanup command
    """

    def __init__(
        self,
        node_runner: Callable[[str], CommandRunner] | None = None,
        home_runner: CommandRunner | None = None,
        state_dir: str = DEFAULT_STATE_DIR,
        attempts: int = 2,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
    ):
        self.node_runner = node_runner
        self.home_runner = home_runner or LocalRunner()
        self.state_dir = state_dir
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout

    def cleanup(self, node: str | None, owner: str) -> None:
        """Sweep processes and locks for ``owner`` on ``node`` (None = home runner host)."""
        runner = self._resolve_runner(node)
        if runner is None:
            return
        logger.info("Sweeping stale endpoint processes for %s on %s", owner, runner.host)
        self._run_steps(runner, build_kill_steps(owner) + build_lock_steps(self.state_dir))

    def remove_locks(self, node: str | None = None) -> None:
        """Delete lock markers only."""
        runner = self._resolve_runner(node)
        if runner is None:
            return
        logger.info("Cleaning up stale lock files in ~/%s on %s", self.state_dir, runner.host)
        self._run_steps(runner, build_lock_steps(self.state_dir))

    def _resolve_runner(self, node: str | None) -> CommandRunner | None:
        if node is None:
            return self.home_runner
        if self.node_runner is None:
            logger.warning("No way to reach %s configured, skipping cleanup", node)
            return None
        try:
            return self.node_runner(node)
        except Exception as e:
            logger.warning("Could not prepare cleanup for %s: %s", node, e)
            return None

    def _run_steps(self, runner: CommandRunner, steps: list[SweepStep]) -> None:
        for step in steps:
            try:
                self._run_step(runner, step)
            except ConnectivityError as e:
                logger.warning("Failed to connect to %s for cleanup, skipping (%s)", runner.host, e)
                return
            except Exception as e:
                logger.warning("Cleanup of %s on %s failed: %s", step.description, runner.host, e)

    def _run_step(self, runner: CommandRunner, step: SweepStep) -> None:
        for attempt in range(1, self.attempts + 1):
            try:
                result = runner.run(step.argv, timeout=self.timeout)
                break
            except ConnectivityError as e:
                if attempt >= self.attempts:
                    raise
                logger.debug(
                    "Cleanup connection to %s failed (attempt %d/%d): %s",
                    runner.host,
                    attempt,
                    self.attempts,
                    e,
                )
                time.sleep(self.retry_delay)

        if result.returncode == 0:
            logger.debug("Cleaned %s on %s", step.description, runner.host)
        elif step.argv[0] == "pkill" and result.returncode == PKILL_NO_MATCH:
            logger.debug("No %s to clean on %s", step.description, runner.host)
        else:
            logger.debug(
                "%s exited %d on %s: %s",
                shlex.join(step.argv),
                result.returncode,
                runner.host,
                (result.stderr or "").strip(),
            )
