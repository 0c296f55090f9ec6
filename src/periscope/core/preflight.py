# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Pre-flight checks run against the login node before connecting.

This module provides:
- check_login(): the login node answers over ssh with the local key
- verify_cluster_key(): the cluster-side private key exists
- cluster_key_authorized() / authorize_cluster_key(): compute nodes can ssh back
- ensure_remote_log_dir(): sbatch does not create the --output directory
- run_preflight(): all of the above, in order
"""

import logging
import posixpath
from collections.abc import Callable

from periscope.core.errors import ConfigurationError, ConnectivityError
from periscope.core.models import Session, realize_log_path
from periscope.core.remote import CommandRunner

logger = logging.getLogger(__name__)

# Inner shell scripts get the key path as $1, so it is never spliced into shell text
KEY_AUTHORIZED_SCRIPT = 'grep -qxF -- "$(ssh-keygen -y -f "$1")" "$HOME/.ssh/authorized_keys"'
AUTHORIZE_KEY_SCRIPT = (
    'mkdir -p "$HOME/.ssh" && chmod 700 "$HOME/.ssh" && '
    'ssh-keygen -y -f "$1" >> "$HOME/.ssh/authorized_keys" && '
    'chmod 600 "$HOME/.ssh/authorized_keys"'
)


def check_login(runner: CommandRunner) -> None:
    """Raise ConnectivityError unless the login node runs a trivial command."""
    logger.info("Checking connection to %s...", runner.host)
    result = runner.run(["true"])
    if result.returncode != 0:
        raise ConnectivityError(
            f"Connection to {runner.host} failed: {(result.stderr or '').strip()}",
            host=runner.host,
        )
    logger.info("Connection to %s successful", runner.host)


def verify_cluster_key(runner: CommandRunner, key_path: str) -> None:
    """Raise ConfigurationError if the cluster-side key does not exist."""
    result = runner.run(["test", "-f", key_path])
    if result.returncode != 0:
        raise ConfigurationError(
            f"Cluster-side SSH key not found at {key_path!r} on {runner.host}. "
            "Fix cluster.cluster_ssh_key or generate a key on the cluster."
        )
    logger.info("Cluster-side key verified")


def cluster_key_authorized(runner: CommandRunner, key_path: str) -> bool:
    """True if the cluster key's public half is in ~/.ssh/authorized_keys."""
    result = runner.run(["sh", "-c", KEY_AUTHORIZED_SCRIPT, "sh", key_path])
    return result.returncode == 0


def authorize_cluster_key(runner: CommandRunner, key_path: str) -> None:
    """Append the cluster key's public half to ~/.ssh/authorized_keys."""
    logger.info("Adding public key of %s to authorized_keys on %s", key_path, runner.host)
    result = runner.run(["sh", "-c", AUTHORIZE_KEY_SCRIPT, "sh", key_path])
    if result.returncode != 0:
        raise ConfigurationError(
            f"Failed to add the public key automatically: {(result.stderr or '').strip()}. "
            f"Add {key_path}.pub to ~/.ssh/authorized_keys on the cluster manually."
        )


def log_directory(session: Session) -> str:
    """Directory part of the session log path (%x and %u realized)."""
    directory = posixpath.dirname(session.log_path_template) or "."
    return realize_log_path(directory, job_name=session.name, job_id="", user=session.owner)


def ensure_remote_log_dir(runner: CommandRunner, session: Session) -> str:
    """Create the log directory on the cluster and return it."""
    log_dir = log_directory(session)
    logger.info("Ensuring remote log directory exists at %s", log_dir)
    result = runner.run(["mkdir", "-p", log_dir])
    if result.returncode != 0:
        raise ConfigurationError(f"Could not create log directory {log_dir!r}: {(result.stderr or '').strip()}")
    return log_dir


def run_preflight(
    runner: CommandRunner,
    session: Session,
    confirm: Callable[[str], bool] | None = None,
) -> None:
    """Run every check against the login node.

    Args:
        runner: Runner for the login node
        session: Session about to be established
        confirm: Asked before modifying authorized_keys; None means never modify

    Raises:
        ConnectivityError: login node unreachable
        ConfigurationError: a check failed and could not be fixed
    """
    check_login(runner)
    verify_cluster_key(runner, session.host_key)

    if cluster_key_authorized(runner, session.host_key):
        logger.info("Cluster-side key is authorized")
    else:
        question = (
            f"The public key for {session.host_key} is not in ~/.ssh/authorized_keys on the cluster. "
            "Compute nodes need it to reach the login node. Add it now?"
        )
        if confirm is None or not confirm(question):
            raise ConfigurationError(
                f"Add {session.host_key}.pub to ~/.ssh/authorized_keys on the cluster and run again."
            )
        authorize_cluster_key(runner, session.host_key)

    ensure_remote_log_dir(runner, session)
