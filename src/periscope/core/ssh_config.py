# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Managed host block in the local ~/.ssh/config.

The block lives between two marker lines and routes the host alias to the
running tunnel job: its ProxyCommand asks squeue on the login node which node
runs the job and pipes the connection there with nc. Nothing outside the
markers is ever touched.
"""

import logging
import os
import re
import tempfile
from enum import Enum
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from periscope.core.errors import ConfigurationError
from periscope.core.job_spec import TEMPLATE_DIR
from periscope.core.schema import PeriscopeConfig

logger = logging.getLogger(__name__)

START_MARKER = "### Periscope VSCode Tunnel Start ###"
END_MARKER = "### Periscope VSCode Tunnel End ###"
SSH_CONFIG_TEMPLATE = "ssh_config.j2"


class BlockStatus(Enum):
    UP_TO_DATE = "up_to_date"
    MISSING = "missing"
    OUTDATED = "outdated"


def default_ssh_config_path() -> Path:
    return Path.home() / ".ssh" / "config"


def render_block(
    host_alias: str,
    user: str,
    login_node: str,
    job_name: str,
    port: int,
    identity_file: str,
) -> str:
    """Render the managed block, markers included, without a trailing newline."""
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    return env.get_template(SSH_CONFIG_TEMPLATE).render(
        host_alias=host_alias,
        user=user,
        login_node=login_node,
        job_name=job_name,
        port=port,
        identity_file=identity_file,
    )


def render_block_for(config: PeriscopeConfig) -> str:
    return render_block(
        host_alias=config.session.host_alias,
        user=config.cluster.user,
        login_node=config.cluster.login_node,
        job_name=config.session.name,
        port=config.session.port,
        identity_file=config.cluster.local_ssh_key_path,
    )


def find_block(text: str) -> tuple[int, int] | None:
    """Line span [start, end] of the managed block, or None."""
    lines = text.splitlines()
    start = None
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped == START_MARKER and start is None:
            start = i
        elif stripped == END_MARKER and start is not None:
            return start, i
    return None


def extract_block(text: str) -> str | None:
    span = find_block(text)
    if span is None:
        return None
    lines = text.splitlines()
    return "\n".join(lines[span[0] : span[1] + 1])


def remove_block(text: str) -> str:
    """Text with the managed block (and nothing else) removed."""
    span = find_block(text)
    if span is None:
        return text
    lines = text.splitlines()
    kept = lines[: span[0]] + lines[span[1] + 1 :]
    return "\n".join(kept) + ("\n" if kept else "")


def has_unmanaged_conflict(text: str, host_alias: str) -> bool:
    """True if a Host line for the alias exists outside the managed block."""
    pattern = re.compile(rf"^\s*Host\s+{re.escape(host_alias)}\s*$", re.IGNORECASE)
    return any(pattern.match(line) for line in remove_block(text).splitlines())


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def block_status(text: str, desired: str) -> BlockStatus:
    existing = extract_block(text)
    if existing is None:
        return BlockStatus.MISSING
    if normalize_whitespace(existing) == normalize_whitespace(desired):
        return BlockStatus.UP_TO_DATE
    return BlockStatus.OUTDATED


def check_ssh_config(path: Path, desired: str, host_alias: str) -> BlockStatus:
    """Compare the config file against the desired block.

    Raises:
        ConfigurationError: an unmanaged entry for the same alias exists
    """
    text = path.read_text() if path.exists() else ""
    if has_unmanaged_conflict(text, host_alias):
        raise ConfigurationError(
            f"A conflicting, unmanaged SSH config entry for {host_alias!r} already exists in {path}. "
            "Remove or rename it and run again."
        )
    return block_status(text, desired)


def apply_block(path: Path, desired: str) -> None:
    """Replace (or append) the managed block, writing through a temp file."""
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    text = path.read_text() if path.exists() else ""
    remaining = remove_block(text).rstrip("\n")
    updated = f"{remaining}\n\n{desired}\n" if remaining else f"{desired}\n"

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".config.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(updated)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    logger.info("Updated SSH config block in %s", path)
