# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Session lifecycle manager.

Establishing a session:
1. Find every queued/running allocation with the session's name
2. Sweep its node and cancel it
3. Wait (bounded) for the cancelled allocations to leave the queue
4. Clear stale lock files from the shared home directory
5. Submit a new allocation carrying the job body
6. Poll until it is RUNNING and return its endpoint
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from periscope.core.errors import PeriscopeError
from periscope.core.job_spec import JobSpec, build_job_spec
from periscope.core.models import Endpoint, Session
from periscope.core.polling import wait_for_departure, wait_for_running
from periscope.core.scheduler import SchedulerClient
from periscope.core.sweeper import ProcessSweeper

logger = logging.getLogger(__name__)


@dataclass
class LifecycleManager:
    """Keeps exactly one live allocation per session name.

    Usage:
        manager = LifecycleManager(scheduler=scheduler, sweeper=sweeper)
        endpoint = manager.establish(session)

    Nothing about previous allocations is remembered between calls; every
    decision is made from what the scheduler reports.
    """

    scheduler: SchedulerClient
    sweeper: ProcessSweeper
    job_spec_factory: Callable[[Session], JobSpec] = build_job_spec
    poll_interval: float = 1.0
    start_timeout: float = 600.0
    cancel_settle_timeout: float = 30.0

    def establish(self, session: Session, timeout: float | None = None) -> Endpoint:
        """Replace any existing allocation for the session and return the new endpoint."""
        logger.info("Establishing session %r", session.name)

        self.preempt(session)
        self.sweeper.remove_locks()

        job_id = self.submit(session)
        return self.poll_until_running(job_id, session, timeout=timeout)

    def preempt(self, session: Session) -> list[str]:
        """Sweep and cancel every non-terminal allocation named like the session.

        Returns:
            Ids of the cancelled allocations
        """
        logger.info("Checking for existing %r jobs...", session.name)
        job_ids = self.scheduler.query_by_name(session.name)
        if not job_ids:
            logger.info("No old tunnel jobs found")
            return []

        for job_id in job_ids:
            node = self._resolve_node(job_id)
            if node:
                self.sweeper.cleanup(node, session.owner)
            self.scheduler.cancel(job_id)

        logger.info("Waiting for scheduler to process %d cancellation(s)...", len(job_ids))
        remaining = wait_for_departure(
            self.scheduler,
            session.name,
            job_ids,
            timeout=self.cancel_settle_timeout,
            interval=self.poll_interval,
        )
        if remaining:
            # Overlap is tolerated: the new job's local sweep cleans up after the old one
            logger.warning(
                "Cancelled job(s) %s still listed after %.0fs, continuing anyway",
                ", ".join(sorted(remaining)),
                self.cancel_settle_timeout,
            )
        return job_ids

    def submit(self, session: Session) -> str:
        """Submit a fresh allocation carrying the job body."""
        logger.info("Submitting new tunnel job %r to the scheduler...", session.name)
        spec = self.job_spec_factory(session)
        job_id = self.scheduler.submit(spec)
        logger.info("Job submitted with ID %s (log: %s)", job_id, session.realized_log_path(job_id))
        return job_id

    def poll_until_running(self, job_id: str, session: Session, timeout: float | None = None) -> Endpoint:
        """Wait for the allocation to run and derive its endpoint.

        Raises:
            AllocationTerminated: terminal before it became reachable
            TimeoutExceeded: still pending when ``timeout`` elapsed
        """
        timeout = self.start_timeout if timeout is None else timeout
        logger.info("Waiting for job %s to start (timeout %.0fs)...", job_id, timeout)

        allocation = wait_for_running(
            self.scheduler,
            job_id,
            timeout=timeout,
            interval=self.poll_interval,
            log_path=session.realized_log_path(job_id),
        )
        assert allocation.node is not None

        endpoint = Endpoint(
            node=allocation.node,
            port=session.port,
            job_id=job_id,
            host_alias=session.host_alias,
        )
        logger.info("Job %s is now running on node %s", job_id, endpoint.node)
        return endpoint

    def _resolve_node(self, job_id: str) -> str | None:
        try:
            return self.scheduler.query_state(job_id).node
        except PeriscopeError as e:
            logger.warning("Could not resolve node of job %s: %s", job_id, e)
            return None
