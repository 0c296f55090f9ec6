# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Command execution, locally or over SSH.

This module provides:
- CommandRunner: protocol for anything that can run an argv with a timeout
- LocalRunner: subprocess on this host
- SSHRunner: ssh to a host, optionally through another runner (login node hop)

Commands are always passed as argv lists. Each SSH hop quotes the argv with
shlex.join, so values never need hand-written shell quoting.
"""

import logging
import shlex
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from .errors import ConnectivityError

logger = logging.getLogger(__name__)

# ssh reserves exit status 255 for its own (connection) errors
SSH_CONNECTION_FAILURE = 255

DEFAULT_COMMAND_TIMEOUT = 60.0


class CommandRunner(Protocol):
    """Anything that can run an argv and return the completed process."""

    @property
    def host(self) -> str:
        """Host the commands end up running on."""
        ...

    def run(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        """Run argv to completion.

        Raises:
            ConnectivityError: if the host cannot be reached or the command times out
        """
        ...


class LocalRunner:
    """Run commands on this host."""

    def __init__(self, cwd: Path | str | None = None, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.cwd = cwd
        self.timeout = timeout

    @property
    def host(self) -> str:
        return "localhost"

    def run(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        timeout = timeout if timeout is not None else self.timeout
        logger.debug("Running command: %s", shlex.join(argv))
        try:
            return subprocess.run(
                list(argv),
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.cwd,
            )
        except subprocess.TimeoutExpired as e:
            raise ConnectivityError(f"Timed out after {timeout:.0f}s running {argv[0]}", host=self.host) from e
        except FileNotFoundError as e:
            raise ConnectivityError(f"Command not found: {argv[0]}", host=self.host) from e


class SSHRunner:
    """Run commands on a remote host over ssh.

    The ssh client itself is started through ``via`` (a LocalRunner by default),
    which lets a compute node be reached from the login node:

        login = SSHRunner("login01", user="bsmith", identity_file="~/.ssh/id_rsa")
        node = SSHRunner("gpu03", identity_file="/home/bsmith/.ssh/cluster_key", via=login)
    """

    def __init__(
        self,
        hostname: str,
        *,
        user: str | None = None,
        identity_file: str | None = None,
        connect_timeout: int = 5,
        batch_mode: bool = True,
        strict_host_key_checking: bool = True,
        via: CommandRunner | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.hostname = hostname
        self.user = user
        self.identity_file = identity_file
        self.connect_timeout = connect_timeout
        self.batch_mode = batch_mode
        self.strict_host_key_checking = strict_host_key_checking
        self.via = via or LocalRunner()
        self.timeout = timeout

    @property
    def host(self) -> str:
        return self.hostname

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.hostname}" if self.user else self.hostname

    def ssh_command(self, argv: Sequence[str]) -> list[str]:
        """Build the ssh argv that runs ``argv`` on the remote host."""
        cmd = ["ssh", "-o", f"ConnectTimeout={self.connect_timeout}"]
        if self.batch_mode:
            cmd.extend(["-o", "BatchMode=yes"])
        if not self.strict_host_key_checking:
            cmd.extend(["-o", "StrictHostKeyChecking=no"])
        if self.identity_file:
            cmd.extend(["-i", self.identity_file])
        cmd.append(self.destination)
        # The remote side re-parses the command with a shell
        cmd.append(shlex.join(argv))
        return cmd

    def run(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        timeout = timeout if timeout is not None else self.timeout
        result = self.via.run(self.ssh_command(argv), input=input, timeout=timeout)
        if result.returncode == SSH_CONNECTION_FAILURE:
            detail = (result.stderr or "").strip() or "ssh exited with status 255"
            raise ConnectivityError(f"Cannot reach {self.hostname}: {detail}", host=self.hostname)
        return result
