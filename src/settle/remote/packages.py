# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/remote/packages.py

from __future__ import annotations

import shlex
from typing import Optional, Protocol

from settle.errors import ProbeError
from settle.remote.host import RemoteHost


class PackageManager(Protocol):
    def query(self, name: str, *, timeout: Optional[float] = None) -> Optional[str]: ...

    def install(self, name: str, version: Optional[str] = None, *, timeout: Optional[float] = None) -> None: ...

    def remove(self, name: str, *, timeout: Optional[float] = None) -> None: ...


class AptPackageManager:
    """dpkg/apt adapter. query() returns the installed version or None."""

    def __init__(self, host: RemoteHost):
        self.host = host

    def query(self, name: str, *, timeout: Optional[float] = None) -> Optional[str]:
        res = self.host.run(
            "dpkg-query -W -f='${Status}|${Version}' -- " + shlex.quote(name),
            timeout=timeout,
        )
        if res.exit_code == 1 and "no packages found" in res.stderr.lower():
            return None
        if not res.ok:
            raise ProbeError("malformed", name, f"dpkg-query exit {res.exit_code}: {res.stderr.strip()}")
        status, _, version = res.stdout.strip().partition("|")
        if not status.endswith("installed") or status.endswith("not-installed"):
            return None
        return version or None

    def install(self, name: str, version: Optional[str] = None, *, timeout: Optional[float] = None) -> None:
        target = f"{name}={version}" if version else name
        self.host.check(
            "DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends "
            + shlex.quote(target),
            timeout=timeout,
            resource=name,
        )

    def remove(self, name: str, *, timeout: Optional[float] = None) -> None:
        self.host.check(
            "DEBIAN_FRONTEND=noninteractive apt-get remove -y " + shlex.quote(name),
            timeout=timeout,
            resource=name,
        )
