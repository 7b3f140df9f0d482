# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/remote/validators.py

from __future__ import annotations

import logging
import shlex
from typing import Optional, Protocol

from settle.remote.host import RemoteHost

log = logging.getLogger("settle")


class Validator(Protocol):
    def validate(self, staged_path: str) -> bool: ...


class CommandValidator:
    """
    Runs an external checker against a staged file, e.g. ``sshd -t -f %s``
    or ``visudo -cf %s``. ``%s`` is replaced by the staged path; without it
    the path is appended. Exit code 0 means valid.
    """

    def __init__(self, host: RemoteHost, template: str, *, timeout: Optional[float] = None):
        self.host = host
        self.template = template
        self.timeout = timeout

    def command_for(self, staged_path: str) -> str:
        quoted = shlex.quote(staged_path)
        if "%s" in self.template:
            return self.template.replace("%s", quoted)
        return f"{self.template} {quoted}"

    def validate(self, staged_path: str) -> bool:
        res = self.host.run(self.command_for(staged_path), timeout=self.timeout)
        if not res.ok:
            log.warning(
                "[%s] validator rejected %s (exit %d): %s",
                self.host.name, staged_path, res.exit_code, (res.stderr or res.stdout).strip(),
            )
        return res.ok
