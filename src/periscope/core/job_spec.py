# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Structured description of the tunnel allocation and its batch script."""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from periscope.core.models import ResourceSpec, Session

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"
JOB_SCRIPT_TEMPLATE = "job_script.sh.j2"

# Signal Slurm sends to the batch step ahead of the hard time limit
PREEMPTION_SIGNAL = "USR1"

JOB_BODY_MODULE = "periscope.cli.job_body"

# The state dir travels in the environment: on the job body's command line it
# would match the sweeper's pkill -f patterns and the body would kill itself
STATE_DIR_ENV_VAR = "PERISCOPE_STATE_DIR"


@dataclass(frozen=True)
class JobSpec:
    """Everything sbatch needs to start the tunnel job.

    The job body is kept as an argv tuple; it is only turned into shell text
    by the template, through shlex quoting.
    """

    job_name: str
    resources: ResourceSpec
    output: str
    command: tuple[str, ...]
    signal_margin: int | None = 90
    environment: dict[str, str] = field(default_factory=dict)

    def sbatch_args(self) -> list[str]:
        """sbatch options for this job (the script itself goes on stdin)."""
        r = self.resources
        args = [
            f"--job-name={self.job_name}",
            f"--nodes={r.nodes}",
            f"--ntasks-per-node={r.ntasks_per_node}",
            f"--cpus-per-task={r.cpus_per_task}",
            f"--mem-per-cpu={r.mem_per_cpu}",
            f"--partition={r.partition}",
            f"--time={r.time_limit}",
            f"--output={self.output}",
        ]
        if self.signal_margin:
            # B: only the batch shell (the exec'd job body) gets the signal
            args.append(f"--signal=B:{PREEMPTION_SIGNAL}@{self.signal_margin}")
        return args

    def render_script(self) -> str:
        """Render the batch script from the Jinja template."""
        env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        env.filters["quote"] = lambda value: shlex.quote(str(value))
        env.filters["join_argv"] = lambda argv: shlex.join(str(a) for a in argv)
        template = env.get_template(JOB_SCRIPT_TEMPLATE)
        return template.render(
            job_name=self.job_name,
            environment=self.environment,
            command=self.command,
        )


def build_job_body_command(
    session: Session,
    *,
    python: str = "python3",
    sshd_path: str = "/usr/sbin/sshd",
    shutdown_grace: float = 30.0,
) -> tuple[str, ...]:
    """Build the argv that runs the job body inside the allocation."""
    return (
        python,
        "-u",
        "-m",
        JOB_BODY_MODULE,
        "--name",
        session.name,
        "--owner",
        session.owner,
        "--port",
        str(session.port),
        "--host-key",
        session.host_key,
        "--grace",
        str(shutdown_grace),
        "--sshd",
        sshd_path,
    )


def build_job_spec(
    session: Session,
    *,
    python: str = "python3",
    sshd_path: str = "/usr/sbin/sshd",
    state_dir: str = ".vscode-server",
    shutdown_grace: float = 30.0,
    signal_margin: int = 90,
) -> JobSpec:
    """Describe the tunnel allocation for a session."""
    command = build_job_body_command(
        session,
        python=python,
        sshd_path=sshd_path,
        shutdown_grace=shutdown_grace,
    )
    spec = JobSpec(
        job_name=session.name,
        resources=session.resources,
        output=session.log_path_template,
        command=command,
        signal_margin=signal_margin,
        environment={"PYTHONUNBUFFERED": "1", STATE_DIR_ENV_VAR: state_dir},
    )
    logger.debug("Job spec for %s: %s", session.name, shlex.join(spec.sbatch_args()))
    return spec
