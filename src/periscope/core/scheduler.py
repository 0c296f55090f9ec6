# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Protocol definition for scheduler clients."""

from typing import TYPE_CHECKING, List, Protocol

if TYPE_CHECKING:
    from periscope.core.job_spec import JobSpec
    from periscope.core.models import Allocation


class SchedulerClient(Protocol):
    """Protocol that every scheduler client must implement.

    The scheduler is the single source of truth for which allocation belongs
    to a session name. Clients must not cache allocation identity between
    calls.

    Schedulers currently supported:
    - Slurm (squeue / sbatch / scancel), see periscope.core.slurm
    """

    def submit(self, spec: "JobSpec") -> str:
        """Submit a new allocation.

        Args:
            spec: Structured job description (resources + job body argv)

        Returns:
            The new allocation id

        Raises:
            SubmissionRejected: if the scheduler refuses the job
        """
        ...

    def query_state(self, job_id: str) -> "Allocation":
        """Get the current state and node of an allocation.

        An allocation the scheduler no longer knows about is reported with
        state UNKNOWN rather than raising.
        """
        ...

    def query_by_name(self, name: str) -> List[str]:
        """Get the ids of all non-terminal allocations with this name."""
        ...

    def cancel(self, job_id: str) -> None:
        """Cancel an allocation."""
        ...
