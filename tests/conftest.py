# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Shared fakes: an in-memory scheduler and a scripted command runner."""

import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import pytest

from periscope.core.job_spec import JobSpec
from periscope.core.models import Allocation, AllocationState, ResourceSpec, Session

# (state, node) pairs an allocation steps through on successive queries
Progression = list[tuple[AllocationState, str | None]]


@dataclass
class FakeJob:
    job_id: str
    name: str
    progression: Progression
    step: int = 0

    @property
    def current(self) -> tuple[AllocationState, str | None]:
        return self.progression[min(self.step, len(self.progression) - 1)]


class FakeScheduler:
    """In-memory SchedulerClient.

    Each query_state() advances a job one step through its progression and
    stays on the last step. Cancelled jobs drop out of query_by_name()
    immediately unless listed in ``sticky``.
    """

    def __init__(self):
        self.jobs: dict[str, FakeJob] = {}
        self.next_id = 1000
        self.submit_progression: Progression = [
            (AllocationState.PENDING, None),
            (AllocationState.RUNNING, "gpu07"),
        ]
        self.submitted: list[JobSpec] = []
        self.cancelled: list[str] = []
        self.sticky: set[str] = set()
        self.events: list[tuple[str, str]] = []
        self.submit_error: Exception | None = None
        self.query_errors: dict[str, Exception] = {}

    def add_job(self, name: str, progression: Progression, job_id: str | None = None) -> str:
        job_id = job_id or self._new_id()
        self.jobs[job_id] = FakeJob(job_id=job_id, name=name, progression=list(progression))
        return job_id

    def _new_id(self) -> str:
        self.next_id += 1
        return str(self.next_id)

    def submit(self, spec: JobSpec) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(spec)
        job_id = self.add_job(spec.job_name, self.submit_progression)
        self.events.append(("submit", job_id))
        return job_id

    def query_state(self, job_id: str) -> Allocation:
        self.events.append(("query_state", job_id))
        if job_id in self.query_errors:
            raise self.query_errors[job_id]
        job = self.jobs.get(job_id)
        if job is None:
            return Allocation(job_id=job_id, state=AllocationState.UNKNOWN)
        state, node = job.current
        job.step += 1
        return Allocation(job_id=job_id, state=state, node=node, name=job.name)

    def query_by_name(self, name: str) -> list[str]:
        listed = []
        for job in self.jobs.values():
            if job.name != name:
                continue
            state, _ = job.current
            if not state.is_terminal or job.job_id in self.sticky:
                listed.append(job.job_id)
        return listed

    def cancel(self, job_id: str) -> None:
        self.events.append(("cancel", job_id))
        self.cancelled.append(job_id)
        job = self.jobs[job_id]
        job.progression = [(AllocationState.CANCELLED, job.current[1])]
        job.step = 0


class RecordingSweeper:
    """Stands in for ProcessSweeper; records calls into a shared event list."""

    def __init__(self, events: list | None = None):
        self.events = events if events is not None else []

    def cleanup(self, node, owner):
        self.events.append(("cleanup", node, owner))

    def remove_locks(self, node=None):
        self.events.append(("remove_locks", node))


@dataclass
class FakeRunner:
    """CommandRunner returning scripted results.

    ``handler`` maps (argv, input) to a CompletedProcess or raises; by default
    every command succeeds with empty output.
    """

    host: str = "login01"
    handler: Callable[[list[str], str | None], subprocess.CompletedProcess] | None = None
    calls: list[list[str]] = field(default_factory=list)
    inputs: list[str | None] = field(default_factory=list)

    def run(self, argv: Sequence[str], *, input: str | None = None, timeout: float | None = None):
        argv = list(argv)
        self.calls.append(argv)
        self.inputs.append(input)
        if self.handler is None:
            return completed(argv)
        return self.handler(argv, input)


def completed(argv, returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=argv, returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def session() -> Session:
    return Session(
        name="tunnel-job",
        owner="bsmith",
        resources=ResourceSpec(partition="shared"),
        port=4582,
        host_key="/users/bsmith/.ssh/cluster_key",
        log_path_template="/dcs07/bill/data/.periscope/logs/%x-%j.log",
        host_alias="periscope-vscode-tunnel",
    )


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def config_dict() -> dict:
    return {
        "cluster": {
            "user": "bsmith",
            "login_node": "login01.example.edu",
            "local_ssh_key": "~/.ssh/id_rsa",
            "cluster_ssh_key": "/users/bsmith/.ssh/cluster_key",
            "remote_workspace_path": "/dcs07/bill/data",
        },
        "session": {"port": 4582},
        "resources": {"partition": "shared"},
    }
