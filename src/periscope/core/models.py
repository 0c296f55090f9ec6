# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Core data types for tunnel sessions.

- Session: what the user asked for (immutable for one run)
- Allocation: what the scheduler granted, as last observed
- Endpoint: where a RUNNING allocation can be reached
"""

from dataclasses import dataclass
from enum import Enum

# Placeholders squeue prints in the node column before a node is assigned
UNASSIGNED_NODES = frozenset({"", "(null)", "Nodes_not_assigned", "n/a"})


class AllocationState(str, Enum):
    """Allocation lifecycle as seen by periscope."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self not in (AllocationState.PENDING, AllocationState.RUNNING)

    @classmethod
    def from_slurm(cls, raw: str | None) -> "AllocationState":
        """Fold a Slurm job state onto an AllocationState.

        Handles decorated states such as "CANCELLED by 1234" or "RUNNING+".
        """
        state = (raw or "").strip().upper()
        state = state.split()[0] if state else ""
        if "+" in state:
            state = state.split("+", 1)[0]
        return _SLURM_STATES.get(state, cls.UNKNOWN)


_SLURM_STATES = {
    "PENDING": AllocationState.PENDING,
    "CONFIGURING": AllocationState.PENDING,
    "REQUEUED": AllocationState.PENDING,
    "REQUEUE_HOLD": AllocationState.PENDING,
    "REQUEUE_FED": AllocationState.PENDING,
    "RESIZING": AllocationState.PENDING,
    "SUSPENDED": AllocationState.PENDING,
    "RUNNING": AllocationState.RUNNING,
    "COMPLETING": AllocationState.COMPLETED,
    "COMPLETED": AllocationState.COMPLETED,
    "FAILED": AllocationState.FAILED,
    "TIMEOUT": AllocationState.FAILED,
    "NODE_FAIL": AllocationState.FAILED,
    "OUT_OF_MEMORY": AllocationState.FAILED,
    "BOOT_FAIL": AllocationState.FAILED,
    "DEADLINE": AllocationState.FAILED,
    "PREEMPTED": AllocationState.FAILED,
    "CANCELLED": AllocationState.CANCELLED,
}


def normalize_node(raw: str | None) -> str | None:
    """Return the first assigned node, or None if the job has none yet."""
    node = (raw or "").strip()
    if node in UNASSIGNED_NODES or node.startswith("("):
        return None
    return node.split(",")[0]


@dataclass(frozen=True)
class ResourceSpec:
    """Resources requested for one allocation."""

    partition: str
    nodes: int = 1
    ntasks_per_node: int = 1
    cpus_per_task: int = 2
    mem_per_cpu: str = "4G"
    time_limit: str = "10:00:00"


@dataclass(frozen=True)
class Session:
    """Logical identity of the desired endpoint, keyed by name."""

    name: str
    owner: str
    resources: ResourceSpec
    port: int
    host_key: str
    log_path_template: str
    host_alias: str | None = None

    def realized_log_path(self, job_id: str) -> str:
        return realize_log_path(self.log_path_template, job_name=self.name, job_id=job_id, user=self.owner)


@dataclass(frozen=True)
class Allocation:
    """A scheduler-granted resource instance, as last queried."""

    job_id: str
    state: AllocationState
    node: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Endpoint:
    """(node, port) through which a RUNNING allocation is reachable."""

    node: str
    port: int
    job_id: str
    host_alias: str | None = None

    def __str__(self) -> str:
        return f"{self.node}:{self.port}"


class ShutdownReason(Enum):
    """Why the job body is shutting its endpoint down."""

    PREEMPTION_IMMINENT = "preemption imminent"
    TERMINATION_REQUESTED = "termination requested"
    INTERRUPTED = "interrupted"


def realize_log_path(template: str, job_name: str, job_id: str, user: str) -> str:
    """Substitute the Slurm filename patterns periscope uses in log paths.

    Supports %x (job name), %j (job id), %u (user) and %% (literal percent).
    Other patterns are left untouched.
    """
    replacements = {"x": job_name, "j": job_id, "u": user, "%": "%"}
    out: list[str] = []
    i = 0
    while i < len(template):
        ch = template[i]
        if ch == "%" and i + 1 < len(template) and template[i + 1] in replacements:
            out.append(replacements[template[i + 1]])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)
