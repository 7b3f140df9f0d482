# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/prober.py

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from settle.engine.models import (
    CommandDesired,
    CommandState,
    DirectoryState,
    FileState,
    Kind,
    PackageState,
    ProbedState,
    ResourceDeclaration,
    ServiceState,
)
from settle.errors import ConnectionFailed, ExecutionTimeout, ProbeError
from settle.remote.host import RemoteHost
from settle.remote.packages import AptPackageManager, PackageManager
from settle.remote.services import ServiceManager, SystemdServiceManager

log = logging.getLogger("settle")


class FactProber:
    """
    Reads the current state of one resource. Never mutates the host.

    Every failure leaves as ProbeError: timeouts become kind "timeout",
    a lost connection becomes kind "unreachable".
    """

    def __init__(
        self,
        host: RemoteHost,
        *,
        packages: Optional[PackageManager] = None,
        services: Optional[ServiceManager] = None,
    ):
        self.host = host
        self.packages = packages or AptPackageManager(host)
        self.services = services or SystemdServiceManager(host)
        self._probes: Dict[Kind, Callable[[ResourceDeclaration, Optional[float]], ProbedState]] = {
            Kind.FILE: self._probe_file,
            Kind.LINE_IN_FILE: self._probe_file,
            Kind.DIRECTORY: self._probe_directory,
            Kind.PACKAGE: self._probe_package,
            Kind.SERVICE: self._probe_service,
            Kind.COMMAND: self._probe_command,
        }

    def probe(self, decl: ResourceDeclaration) -> ProbedState:
        fn = self._probes.get(decl.kind)
        if fn is None:
            raise ProbeError("malformed", decl.id, f"no prober for kind {decl.kind!r}")
        try:
            state = fn(decl, decl.timeout)
        except ProbeError as exc:
            if exc.resource is None:
                exc.resource = decl.id
            raise
        except ExecutionTimeout as exc:
            raise ProbeError("timeout", decl.id, exc.detail) from exc
        except ConnectionFailed as exc:
            raise ProbeError("unreachable", decl.id, exc.detail) from exc
        log.debug("[%s] probed %s: %s", self.host.name, decl.id, _describe(state))
        return state

    # ------------------ per kind ------------------

    def _probe_file(self, decl: ResourceDeclaration, timeout: Optional[float]) -> FileState:
        stat = self.host.stat(decl.target, timeout=timeout, resource=decl.id)
        if stat is None:
            return FileState(stat=None, content=None)
        if stat.kind != "file":
            raise ProbeError("malformed", decl.id, f"{decl.target} exists but is a {stat.kind}")
        content = self.host.read_bytes(decl.target, timeout=timeout, resource=decl.id)
        return FileState(stat=stat, content=content)

    def _probe_directory(self, decl: ResourceDeclaration, timeout: Optional[float]) -> DirectoryState:
        stat = self.host.stat(decl.target, timeout=timeout, resource=decl.id)
        if stat is not None and stat.kind != "directory":
            raise ProbeError("malformed", decl.id, f"{decl.target} exists but is a {stat.kind}")
        return DirectoryState(stat=stat)

    def _probe_package(self, decl: ResourceDeclaration, timeout: Optional[float]) -> PackageState:
        return PackageState(installed_version=self.packages.query(decl.target, timeout=timeout))

    def _probe_service(self, decl: ResourceDeclaration, timeout: Optional[float]) -> ServiceState:
        return ServiceState(
            enabled=self.services.is_enabled(decl.target, timeout=timeout),
            running=self.services.is_running(decl.target, timeout=timeout),
        )

    def _probe_command(self, decl: ResourceDeclaration, timeout: Optional[float]) -> CommandState:
        desired: CommandDesired = decl.desired  # type: ignore[assignment]
        if desired.creates and self.host.exists(desired.creates, timeout=timeout):
            return CommandState(satisfied=True)
        if desired.unless and self.host.run(desired.unless, timeout=timeout).ok:
            return CommandState(satisfied=True)
        return CommandState(satisfied=False)


def _describe(state: ProbedState) -> str:
    # content is never logged, it may carry rendered secrets
    if isinstance(state, FileState):
        if not state.exists:
            return "absent"
        return f"mode={state.stat.mode:04o} owner={state.stat.owner}:{state.stat.group} bytes={len(state.content or b'')}"
    return repr(state)
