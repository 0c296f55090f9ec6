# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Configuration file loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from marshmallow import ValidationError

from periscope.core.errors import ConfigurationError
from periscope.core.schema import PeriscopeConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PERISCOPE_CONFIG"


def default_config_path() -> Path:
    """Config path from $PERISCOPE_CONFIG, else ~/.config/periscope/config.yaml."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(config_home) / "periscope" / "config.yaml"


def _format_errors(messages: Any, prefix: str = "") -> list[str]:
    """Flatten marshmallow's nested error dict into "path: message" lines."""
    if isinstance(messages, dict):
        lines = []
        for key, value in messages.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            lines.extend(_format_errors(value, path))
        return lines
    if isinstance(messages, list):
        return [f"{prefix}: {m}" if prefix else str(m) for m in messages]
    return [f"{prefix}: {messages}"]


def config_from_dict(data: dict) -> PeriscopeConfig:
    """Validate a config dict.

    Raises:
        ConfigurationError: listing every invalid or missing field
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping")

    try:
        config = PeriscopeConfig.Schema().load(data)
    except ValidationError as e:
        details = "\n".join(f"  - {line}" for line in _format_errors(e.messages))
        raise ConfigurationError(f"Configuration is invalid:\n{details}") from e

    lc = config.lifecycle
    if lc.shutdown_grace >= lc.signal_margin:
        raise ConfigurationError(
            f"lifecycle.shutdown_grace ({lc.shutdown_grace:g}s) must be shorter than "
            f"lifecycle.signal_margin ({lc.signal_margin}s), or the hard kill lands mid-cleanup"
        )
    return config


def load_config(path: Path | str | None = None) -> PeriscopeConfig:
    """Load and validate a YAML config file.

    Raises:
        ConfigurationError: if the file is missing, unparsable or invalid
    """
    config_path = Path(path) if path else default_config_path()
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing {config_path}: {e}") from e

    config = config_from_dict(data)
    logger.debug("Loaded config from %s", config_path)
    return config


def write_config(path: Path, data: dict) -> None:
    """Validate ``data`` and write it as YAML."""
    config_from_dict(data)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write("# Periscope configuration\n")
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    logger.info("Wrote config to %s", path)
