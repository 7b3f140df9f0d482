# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/resources/system.py

from __future__ import annotations

import functools
from typing import List, Optional

from settle.engine.models import (
    CommandDesired,
    CommandState,
    Kind,
    PackageDesired,
    PackageState,
    ResourceDeclaration,
    ServiceDesired,
    ServiceState,
)
from settle.engine.resources.base import Reconciler, Step, ValidatorFactory
from settle.remote.host import RemoteHost
from settle.remote.packages import AptPackageManager, PackageManager
from settle.remote.services import ServiceManager, SystemdServiceManager


class PackageReconciler(Reconciler):
    kind = Kind.PACKAGE

    def __init__(
        self,
        host: RemoteHost,
        *,
        packages: Optional[PackageManager] = None,
        validators: Optional[ValidatorFactory] = None,
    ):
        super().__init__(host, validators=validators)
        self.packages = packages or AptPackageManager(host)

    def diff(self, decl: ResourceDeclaration, state: PackageState) -> List[Step]:
        desired: PackageDesired = decl.desired  # type: ignore[assignment]
        installed = state.installed_version

        if not desired.present:
            if installed is None:
                return []
            return [Step(
                f"remove {decl.target} {installed}",
                functools.partial(self.packages.remove, decl.target, timeout=decl.timeout),
            )]

        if installed is not None and (desired.version is None or installed == desired.version):
            return []

        if installed is None:
            description = " ".join(x for x in ("install", decl.target, desired.version) if x)
        else:
            description = f"change {decl.target} {installed} -> {desired.version}"
        return [Step(
            description,
            functools.partial(self.packages.install, decl.target, desired.version, timeout=decl.timeout),
        )]


class ServiceReconciler(Reconciler):
    kind = Kind.SERVICE

    def __init__(
        self,
        host: RemoteHost,
        *,
        services: Optional[ServiceManager] = None,
        validators: Optional[ValidatorFactory] = None,
    ):
        super().__init__(host, validators=validators)
        self.services = services or SystemdServiceManager(host)

    def diff(self, decl: ResourceDeclaration, state: ServiceState) -> List[Step]:
        desired: ServiceDesired = decl.desired  # type: ignore[assignment]
        steps: List[Step] = []
        if desired.enabled is not None and desired.enabled != state.enabled:
            steps.append(Step(
                "enable" if desired.enabled else "disable",
                functools.partial(self.services.set_enabled, decl.target, desired.enabled, timeout=decl.timeout),
            ))
        if desired.running is not None and desired.running != state.running:
            steps.append(Step(
                "start" if desired.running else "stop",
                functools.partial(self.services.set_running, decl.target, desired.running, timeout=decl.timeout),
            ))
        return steps


class CommandReconciler(Reconciler):
    """
    Runs a command unless its guard (creates / unless) says the work is done.
    The guard is what makes a command idempotent, so one is always required.
    """

    kind = Kind.COMMAND

    def diff(self, decl: ResourceDeclaration, state: CommandState) -> List[Step]:
        desired: CommandDesired = decl.desired  # type: ignore[assignment]
        if state.satisfied:
            return []
        return [Step(
            f"run {desired.command!r}",
            functools.partial(self.host.check, desired.command, timeout=decl.timeout, resource=decl.id),
        )]
