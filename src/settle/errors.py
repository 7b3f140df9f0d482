# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/errors.py

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PROBE = "probe"
    TIMEOUT = "timeout"
    VALIDATION_FAILED = "validation_failed"
    APPLY_FAILED = "apply_failed"
    HANDLER_EXECUTION = "handler_execution"
    PREREQUISITE_UNMET = "prerequisite_unmet"
    CANCELLED = "cancelled"
    DECLARATION = "declaration"
    CONNECTION = "connection"


class SettleError(RuntimeError):
    """Base class for every failure the engine reports."""

    kind: ErrorKind = ErrorKind.APPLY_FAILED
    transient: bool = False

    def __init__(self, detail: str, *, resource: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.resource = resource

    def as_dict(self) -> dict:
        return {
            "type": self.__class__.__name__,
            "kind": self.kind.value,
            "resource": self.resource,
            "detail": self.detail,
        }


class ExecutionTimeout(SettleError):
    """A remote call did not finish within its timeout."""

    kind = ErrorKind.TIMEOUT
    transient = True


class ProbeError(SettleError):
    """
    Reading the current state of a resource failed.

    probe_kind is one of: unreachable, permission, malformed, timeout.
    """

    kind = ErrorKind.PROBE

    TRANSIENT_KINDS = ("unreachable", "timeout")

    def __init__(self, probe_kind: str, resource: Optional[str], detail: str):
        super().__init__(f"[{probe_kind}] {detail}", resource=resource)
        self.probe_kind = probe_kind
        self.transient = probe_kind in self.TRANSIENT_KINDS

    def as_dict(self) -> dict:
        d = super().as_dict()
        d["probe_kind"] = self.probe_kind
        return d


class ValidationFailed(SettleError):
    """Staged content was rejected by its validator; live state untouched."""

    kind = ErrorKind.VALIDATION_FAILED


class ApplyFailed(SettleError):
    """A mutating command exited non-zero."""

    kind = ErrorKind.APPLY_FAILED


class HandlerExecutionError(SettleError):
    kind = ErrorKind.HANDLER_EXECUTION


class PrerequisiteUnmet(SettleError):
    """A resource's prerequisite is missing, misordered or failed."""

    kind = ErrorKind.PREREQUISITE_UNMET


class RunCancelled(SettleError):
    kind = ErrorKind.CANCELLED


class DeclarationError(SettleError):
    """Declarations, inventory or secrets could not be loaded."""

    kind = ErrorKind.DECLARATION


class UnknownHandlerError(DeclarationError):
    pass


class ConnectionFailed(SettleError):
    kind = ErrorKind.CONNECTION
    transient = True


class InvalidTransition(RuntimeError):
    """Run coordinator asked to move between states it cannot connect."""
