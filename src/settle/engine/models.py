# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/models.py

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

from settle.errors import SettleError
from settle.utils.execution import Mode


class Kind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    LINE_IN_FILE = "line-in-file"
    PACKAGE = "package"
    SERVICE = "service"
    COMMAND = "command"


# ---------------------------------------------------------------------
# Desired state payloads (one per kind)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class FileDesired:
    present: bool = True
    content: Optional[bytes] = None
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    validate: Optional[str] = None

    @property
    def digest(self) -> Optional[str]:
        if self.content is None:
            return None
        return hashlib.sha256(self.content).hexdigest()


@dataclass(frozen=True)
class DirectoryDesired:
    present: bool = True
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None


@dataclass(frozen=True)
class LineDesired:
    line: Optional[str] = None
    regexp: Optional[str] = None
    present: bool = True
    create: bool = True
    validate: Optional[str] = None


@dataclass(frozen=True)
class PackageDesired:
    present: bool = True
    version: Optional[str] = None


@dataclass(frozen=True)
class ServiceDesired:
    enabled: Optional[bool] = None
    running: Optional[bool] = None


@dataclass(frozen=True)
class CommandDesired:
    command: str
    creates: Optional[str] = None
    unless: Optional[str] = None


Desired = Union[
    FileDesired, DirectoryDesired, LineDesired, PackageDesired, ServiceDesired, CommandDesired
]


@dataclass(frozen=True)
class ResourceDeclaration:
    """
    One desired-state statement. Frozen: a run never sees it change.
    """
    id: str
    kind: Kind
    target: str                       # path, package name, service name, command label
    desired: Desired
    notify: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()
    required: bool = False
    timeout: Optional[float] = None


@dataclass(frozen=True)
class HandlerSpec:
    name: str
    command: str
    critical: bool = False
    timeout: Optional[float] = None


# ---------------------------------------------------------------------
# Probed state (ephemeral, one snapshot per resource per run)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PathStat:
    kind: str                 # "file" | "directory" | "other"
    mode: int
    owner: str
    group: str


@dataclass(frozen=True)
class FileState:
    stat: Optional[PathStat]
    content: Optional[bytes]

    @property
    def exists(self) -> bool:
        return self.stat is not None


@dataclass(frozen=True)
class DirectoryState:
    stat: Optional[PathStat]

    @property
    def exists(self) -> bool:
        return self.stat is not None


@dataclass(frozen=True)
class PackageState:
    installed_version: Optional[str]


@dataclass(frozen=True)
class ServiceState:
    enabled: bool
    running: bool


@dataclass(frozen=True)
class CommandState:
    satisfied: bool


ProbedState = Union[FileState, DirectoryState, PackageState, ServiceState, CommandState]


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ReconcileResult:
    changed: bool
    error: Optional[SettleError] = None
    detail: str = ""


@dataclass(frozen=True)
class ChangeRecord:
    resource: str
    changed: bool
    error: Optional[SettleError] = None
    detail: str = ""


@dataclass(frozen=True)
class LedgerSummary:
    total: int
    changed: int
    failed: int


@dataclass
class HandlerTrigger:
    name: str
    notified: bool = False


@dataclass(frozen=True)
class HandlerResult:
    name: str
    fired: bool
    would_fire: bool = False
    critical: bool = False
    error: Optional[SettleError] = None


class RunStatus(str, Enum):
    INIT = "init"
    PROBING = "probing"
    RECONCILING = "reconciling"
    HANDLER_FLUSH = "handler_flush"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    host: str
    mode: Mode
    status: RunStatus
    summary: LedgerSummary
    records: Tuple[ChangeRecord, ...] = ()
    handler_results: Tuple[HandlerResult, ...] = ()
    pending_handlers: Tuple[str, ...] = ()
    error: Optional[SettleError] = None

    @property
    def handler_failures(self) -> int:
        return sum(1 for h in self.handler_results if h.error is not None)

    @property
    def exit_code(self) -> int:
        if self.status is RunStatus.DONE and self.summary.failed == 0 and self.handler_failures == 0:
            return 0
        return 1

    def errors(self) -> List[SettleError]:
        found: List[SettleError] = [r.error for r in self.records if r.error is not None]
        found += [h.error for h in self.handler_results if h.error is not None]
        if self.error is not None and self.error not in found:
            found.append(self.error)
        return found
