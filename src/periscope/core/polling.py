# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Allocation state polling and port waiting utilities.

This module provides:
- wait_for_running(): Poll an allocation until it runs, dies or times out
- wait_for_departure(): Poll until cancelled allocations leave the queue
- port_is_open(): Single TCP connect attempt
- wait_for_port(): Poll a TCP port until it accepts connections
"""

import logging
import socket
import time
from collections.abc import Callable

from periscope.core.errors import AllocationTerminated, TimeoutExceeded
from periscope.core.models import Allocation, AllocationState
from periscope.core.scheduler import SchedulerClient

logger = logging.getLogger(__name__)


# ============================================================================
# Allocation Polling
# ============================================================================


def wait_for_running(
    scheduler: SchedulerClient,
    job_id: str,
    timeout: float = 600.0,
    interval: float = 1.0,
    log_path: str | None = None,
) -> Allocation:
    """Poll an allocation at a fixed interval until it is RUNNING on a node.

    Args:
        scheduler: Scheduler client to query
        job_id: Allocation to watch
        timeout: Maximum wait time in seconds
        interval: Seconds between queries
        log_path: Realized job log path, attached to errors for diagnosis

    Returns:
        The RUNNING allocation (node is always set)

    Raises:
        AllocationTerminated: the allocation reached a terminal or unrecognized state
        TimeoutExceeded: still alive (pending) when the timeout elapsed
    """
    start_time = time.monotonic()
    last_state: AllocationState | None = None

    while True:
        allocation = scheduler.query_state(job_id)

        if allocation.state != last_state:
            logger.info("Job %s state: %s", job_id, allocation.state.value)
            last_state = allocation.state

        if allocation.state == AllocationState.RUNNING:
            if allocation.node:
                return allocation
            logger.debug("Job %s is running but has no node yet", job_id)
        elif allocation.state.is_terminal:
            raise AllocationTerminated(
                job_id=job_id,
                state=allocation.state.value,
                node=allocation.node,
                log_path=log_path,
            )

        if time.monotonic() - start_time >= timeout:
            raise TimeoutExceeded(
                job_id=job_id,
                timeout=timeout,
                state=last_state.value if last_state else None,
                log_path=log_path,
            )

        time.sleep(interval)


def wait_for_departure(
    scheduler: SchedulerClient,
    name: str,
    job_ids: list[str],
    timeout: float = 30.0,
    interval: float = 1.0,
) -> set[str]:
    """Wait until the given allocations no longer show up under ``name``.

    The scheduler converges asynchronously after scancel, so this polls
    instead of sleeping a fixed time.

    Returns:
        Ids still listed when the timeout elapsed (empty set if all departed)
    """
    remaining = set(job_ids)
    start_time = time.monotonic()

    while remaining:
        listed = set(scheduler.query_by_name(name))
        remaining &= listed
        if not remaining:
            break
        if time.monotonic() - start_time >= timeout:
            break
        logger.debug("Waiting for %d cancelled job(s) to leave the queue", len(remaining))
        time.sleep(interval)

    return remaining


# ============================================================================
# Port Waiting
# ============================================================================


def port_is_open(host: str, port: int, timeout: float = 1.0) -> bool:
    """One TCP connect attempt."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_port(
    host: str,
    port: int,
    timeout: float = 60.0,
    interval: float = 1.0,
    keep_waiting: Callable[[], bool] | None = None,
) -> bool:
    """Wait for a TCP port to accept connections.

    Args:
        host: Hostname or IP address
        port: Port number
        timeout: Maximum time to wait in seconds
        interval: Time between attempts in seconds
        keep_waiting: Checked before each attempt; returning False gives up early
            (e.g. the listening process already exited)

    Returns:
        True if the port accepted a connection, False otherwise
    """
    deadline = time.monotonic() + timeout

    while keep_waiting is None or keep_waiting():
        if port_is_open(host, port):
            return True
        if time.monotonic() + interval > deadline:
            return False
        time.sleep(interval)

    return False
