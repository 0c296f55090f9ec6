# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Launching the local editor against the tunnel."""

import logging
import shutil
import subprocess

from periscope.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

EDITOR_COMMAND = "code"


def check_editor_available(command: str = EDITOR_COMMAND) -> str:
    """Return the editor executable path or raise ConfigurationError."""
    path = shutil.which(command)
    if path is None:
        raise ConfigurationError(
            f"'{command}' command not found. Install it from VS Code: "
            "Command Palette > Shell Command: Install 'code' command in PATH"
        )
    return path


def folder_uri(host_alias: str, workspace: str) -> str:
    if not workspace.startswith("/"):
        workspace = "/" + workspace
    return f"vscode-remote://ssh-remote+{host_alias}{workspace}"


def launch_editor(host_alias: str, workspace: str, command: str = EDITOR_COMMAND) -> None:
    """Open the remote workspace through the SSH host alias."""
    uri = folder_uri(host_alias, workspace)
    logger.info("Opening %s", uri)
    result = subprocess.run([command, "--folder-uri", uri], capture_output=True, text=True)
    if result.returncode != 0:
        raise ConfigurationError(f"'{command}' failed to open {uri}: {(result.stderr or '').strip()}")
