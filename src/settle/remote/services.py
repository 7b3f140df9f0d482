# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/remote/services.py

from __future__ import annotations

import shlex
from typing import Optional, Protocol

from settle.errors import ProbeError
from settle.remote.host import RemoteHost


class ServiceManager(Protocol):
    def is_enabled(self, name: str, *, timeout: Optional[float] = None) -> bool: ...

    def is_running(self, name: str, *, timeout: Optional[float] = None) -> bool: ...

    def set_enabled(self, name: str, enabled: bool, *, timeout: Optional[float] = None) -> None: ...

    def set_running(self, name: str, running: bool, *, timeout: Optional[float] = None) -> None: ...


class SystemdServiceManager:
    def __init__(self, host: RemoteHost):
        self.host = host

    def is_enabled(self, name: str, *, timeout: Optional[float] = None) -> bool:
        res = self.host.run(f"systemctl is-enabled -- {shlex.quote(name)}", timeout=timeout)
        state = res.stdout.strip()
        if state == "not-found" or "No such file" in res.stderr:
            raise ProbeError("malformed", name, f"unit {name} not found")
        return res.ok and state in ("enabled", "enabled-runtime", "static", "alias", "indirect")

    def is_running(self, name: str, *, timeout: Optional[float] = None) -> bool:
        return self.host.run(f"systemctl is-active --quiet -- {shlex.quote(name)}", timeout=timeout).ok

    def set_enabled(self, name: str, enabled: bool, *, timeout: Optional[float] = None) -> None:
        verb = "enable" if enabled else "disable"
        self.host.check(f"systemctl {verb} -- {shlex.quote(name)}", timeout=timeout, resource=name)

    def set_running(self, name: str, running: bool, *, timeout: Optional[float] = None) -> None:
        verb = "start" if running else "stop"
        self.host.check(f"systemctl {verb} -- {shlex.quote(name)}", timeout=timeout, resource=name)
