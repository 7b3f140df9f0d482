# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/resources/registry.py

from __future__ import annotations

from typing import Dict, Optional

from settle.engine.models import Kind
from settle.engine.resources.base import Reconciler, ValidatorFactory
from settle.engine.resources.files import DirectoryReconciler, FileReconciler, LineInFileReconciler
from settle.engine.resources.system import CommandReconciler, PackageReconciler, ServiceReconciler
from settle.remote.host import RemoteHost
from settle.remote.packages import PackageManager
from settle.remote.services import ServiceManager


def build_reconcilers(
    host: RemoteHost,
    *,
    packages: Optional[PackageManager] = None,
    services: Optional[ServiceManager] = None,
    validators: Optional[ValidatorFactory] = None,
) -> Dict[Kind, Reconciler]:
    reconcilers: list[Reconciler] = [
        FileReconciler(host, validators=validators),
        DirectoryReconciler(host, validators=validators),
        LineInFileReconciler(host, validators=validators),
        PackageReconciler(host, packages=packages, validators=validators),
        ServiceReconciler(host, services=services, validators=validators),
        CommandReconciler(host, validators=validators),
    ]
    return {r.kind: r for r in reconcilers}
