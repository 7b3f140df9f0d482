# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass
from enum import Enum


class Mode(str, Enum):
    """
    CHECK predicts changes without applying them, APPLY converges the host.
    """

    CHECK = "check"
    APPLY = "apply"


@dataclass(frozen=True)
class RunOptions:
    """
    controls how a run talks to its host
    """

    command_timeout: float = 60.0
    connect_timeout: float = 20.0
    connect_retries: int = 3
    probe_retries: int = 2
    retry_delay: float = 2.0
