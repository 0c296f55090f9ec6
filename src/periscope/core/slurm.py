# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
SLURM scheduler client.

This module consolidates all SLURM-related functionality:
- Environment: get_slurm_job_id, get_slurm_job_name
- Scheduler client: SlurmSchedulerClient (squeue / sbatch / scancel)

Commands run through a CommandRunner, so the same client works on the login
node (LocalRunner) or from a laptop (SSHRunner to the login node).
"""

import logging
import os
import shlex

from periscope.core.errors import SchedulerError, SubmissionRejected
from periscope.core.job_spec import JobSpec
from periscope.core.models import Allocation, AllocationState, normalize_node
from periscope.core.remote import CommandRunner

logger = logging.getLogger(__name__)

# squeue reports unknown (already purged) job ids with this message
INVALID_JOB_ID = "Invalid job id"


# ============================================================================
# SLURM Environment
# ============================================================================


def get_slurm_job_id() -> str | None:
    """Get the current SLURM job ID from environment."""
    return os.environ.get("SLURM_JOB_ID") or os.environ.get("SLURM_JOBID")


def get_slurm_job_name() -> str | None:
    """Get the current SLURM job name from environment."""
    return os.environ.get("SLURM_JOB_NAME")


# ============================================================================
# Scheduler Client
# ============================================================================


def parse_sbatch_job_id(output: str) -> str:
    """Extract the job id from ``sbatch --parsable`` output ("123" or "123;cluster")."""
    for line in output.splitlines():
        line = line.strip()
        if line:
            return line.split(";", 1)[0]
    return ""


class SlurmSchedulerClient:
    """SchedulerClient backed by the Slurm command-line tools.

    Usage:
        runner = SSHRunner(config.cluster.login_node, user=config.cluster.user, ...)
        scheduler = SlurmSchedulerClient(runner, owner=config.cluster.user)
        job_ids = scheduler.query_by_name("vscode-tunnel-job")
    """

    def __init__(self, runner: CommandRunner, owner: str, timeout: float = 60.0):
        self.runner = runner
        self.owner = owner
        self.timeout = timeout

    def _run(self, argv: list[str], input: str | None = None):
        return self.runner.run(argv, input=input, timeout=self.timeout)

    def submit(self, spec: JobSpec) -> str:
        argv = ["sbatch", "--parsable", *spec.sbatch_args()]
        logger.debug("Submitting: %s", shlex.join(argv))
        result = self._run(argv, input=spec.render_script())
        if result.returncode != 0:
            raise SubmissionRejected(
                f"sbatch rejected job {spec.job_name!r}",
                diagnostic=(result.stderr or result.stdout or "").strip(),
            )

        job_id = parse_sbatch_job_id(result.stdout or "")
        if not job_id:
            raise SubmissionRejected(
                f"sbatch returned no job id for {spec.job_name!r}",
                diagnostic=(result.stderr or "").strip(),
            )
        logger.info("Submitted job %s (%s)", job_id, spec.job_name)
        return job_id

    def query_state(self, job_id: str) -> Allocation:
        result = self._run(["squeue", "-h", "-j", job_id, "-o", "%T|%N"])
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if INVALID_JOB_ID in stderr:
                # Purged from the queue: finished long enough ago that squeue forgot it
                return Allocation(job_id=job_id, state=AllocationState.UNKNOWN)
            raise SchedulerError(f"squeue failed for job {job_id}", diagnostic=stderr)

        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if not line:
                continue
            raw_state, _, raw_node = line.partition("|")
            return Allocation(
                job_id=job_id,
                state=AllocationState.from_slurm(raw_state),
                node=normalize_node(raw_node),
            )

        return Allocation(job_id=job_id, state=AllocationState.UNKNOWN)

    def query_by_name(self, name: str) -> list[str]:
        result = self._run(["squeue", "-u", self.owner, "-h", "-n", name, "-o", "%A|%T"])
        if result.returncode != 0:
            raise SchedulerError(
                f"squeue failed looking up jobs named {name!r}",
                diagnostic=(result.stderr or "").strip(),
            )

        job_ids = []
        for line in (result.stdout or "").splitlines():
            job_id, _, raw_state = line.strip().partition("|")
            if not job_id:
                continue
            # squeue still lists COMPLETING jobs; they are already on their way out
            if AllocationState.from_slurm(raw_state).is_terminal:
                logger.debug("Skipping job %s (%s)", job_id, raw_state)
                continue
            job_ids.append(job_id)
        return job_ids

    def cancel(self, job_id: str) -> None:
        logger.info("Cancelling job %s", job_id)
        result = self._run(["scancel", job_id])
        if result.returncode != 0:
            raise SchedulerError(
                f"scancel failed for job {job_id}",
                diagnostic=(result.stderr or "").strip(),
            )
