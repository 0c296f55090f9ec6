# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Configuration schema.

Frozen marshmallow dataclasses; ``PeriscopeConfig.Schema().load(data)``
validates a parsed YAML dict and returns a typed config.

Example YAML:
    cluster:
      user: bsmith1
      login_node: jhpce01.jhsph.edu
      local_ssh_key: ~/.ssh/id_rsa
      cluster_ssh_key: /users/bsmith1/.ssh/cluster_key
      remote_workspace_path: /dcs07/bill/data
    session:
      port: 4582
    resources:
      partition: shared
"""

import os
from dataclasses import field
from typing import ClassVar, Optional, Type

from marshmallow import Schema, validate
from marshmallow_dataclass import dataclass

from periscope.core.models import ResourceSpec, Session

DEFAULT_JOB_NAME = "vscode-tunnel-job"
DEFAULT_HOST_ALIAS = "periscope-vscode-tunnel"

_non_empty = validate.Length(min=1)
_slurm_name = validate.Regexp(
    r"^[A-Za-z0-9._-]+$",
    error="May only contain letters, digits, '.', '_' and '-'.",
)


@dataclass(frozen=True)
class ClusterConfig:
    """How to reach the cluster."""

    user: str = field(metadata={"validate": _non_empty})
    login_node: str = field(metadata={"validate": _non_empty})
    local_ssh_key: str = field(metadata={"validate": _non_empty})
    cluster_ssh_key: str = field(metadata={"validate": _non_empty})
    remote_workspace_path: str = field(metadata={"validate": _non_empty})
    connect_timeout: int = field(default=5, metadata={"validate": validate.Range(min=1)})
    command_timeout: float = field(default=60.0, metadata={"validate": validate.Range(min=1)})

    Schema: ClassVar[Type[Schema]] = Schema

    @property
    def local_ssh_key_path(self) -> str:
        return os.path.expanduser(self.local_ssh_key)


@dataclass(frozen=True)
class SessionConfig:
    """The tunnel session: job name, port and SSH alias."""

    port: int = field(metadata={"validate": validate.Range(min=1024, max=65535)})
    name: str = field(default=DEFAULT_JOB_NAME, metadata={"validate": _slurm_name})
    host_alias: str = field(default=DEFAULT_HOST_ALIAS, metadata={"validate": _slurm_name})
    # Slurm filename patterns: %x job name, %j job id
    log_output_path: Optional[str] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class ResourceConfig:
    """Slurm resources for the tunnel allocation."""

    partition: str = field(metadata={"validate": _non_empty})
    nodes: int = field(default=1, metadata={"validate": validate.Range(min=1)})
    ntasks_per_node: int = field(default=1, metadata={"validate": validate.Range(min=1)})
    cpus_per_task: int = field(default=2, metadata={"validate": validate.Range(min=1)})
    mem_per_cpu: str = "4G"
    time_limit: str = "10:00:00"

    Schema: ClassVar[Type[Schema]] = Schema

    def to_spec(self) -> ResourceSpec:
        return ResourceSpec(
            partition=self.partition,
            nodes=self.nodes,
            ntasks_per_node=self.ntasks_per_node,
            cpus_per_task=self.cpus_per_task,
            mem_per_cpu=self.mem_per_cpu,
            time_limit=self.time_limit,
        )


@dataclass(frozen=True)
class LifecycleConfig:
    """Timing of the connect flow and of the in-job shutdown."""

    poll_interval: float = field(default=1.0, metadata={"validate": validate.Range(min=0.1)})
    start_timeout: float = field(default=600.0, metadata={"validate": validate.Range(min=1)})
    cancel_settle_timeout: float = field(default=30.0, metadata={"validate": validate.Range(min=0)})
    # Seconds before the time limit at which Slurm warns the job
    signal_margin: int = field(default=90, metadata={"validate": validate.Range(min=10)})
    shutdown_grace: float = field(default=30.0, metadata={"validate": validate.Range(min=1)})
    sweep_attempts: int = field(default=2, metadata={"validate": validate.Range(min=1, max=10)})

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class EndpointConfig:
    """What runs inside the allocation."""

    sshd_path: str = "/usr/sbin/sshd"
    # Interpreter on the cluster that has periscope installed
    python: str = "python3"
    # Relative to the owner's home directory
    session_state_dir: str = ".vscode-server"

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class PeriscopeConfig:
    """Top-level periscope configuration."""

    cluster: ClusterConfig
    session: SessionConfig
    resources: ResourceConfig
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    endpoint: EndpointConfig = field(default_factory=EndpointConfig)

    Schema: ClassVar[Type[Schema]] = Schema

    @property
    def log_path_template(self) -> str:
        if self.session.log_output_path:
            return self.session.log_output_path
        workspace = self.cluster.remote_workspace_path.rstrip("/")
        return f"{workspace}/.periscope/logs/%x-%j.log"

    def to_session(self) -> Session:
        """Build the immutable Session for one lifecycle run."""
        return Session(
            name=self.session.name,
            owner=self.cluster.user,
            resources=self.resources.to_spec(),
            port=self.session.port,
            host_key=self.cluster.cluster_ssh_key,
            log_path_template=self.log_path_template,
            host_alias=self.session.host_alias,
        )
