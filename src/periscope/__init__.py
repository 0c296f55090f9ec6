# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
periscope - Editor tunnels on Slurm compute nodes.
"""

__version__ = "0.1.0"

from .core.config import load_config
from .core.lifecycle import LifecycleManager

__all__ = [
    "load_config",
    "LifecycleManager",
]
