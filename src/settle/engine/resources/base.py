# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/resources/base.py

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from settle.engine.models import Kind, ProbedState, ReconcileResult, ResourceDeclaration
from settle.errors import SettleError, ValidationFailed
from settle.remote.host import RemoteHost
from settle.remote.validators import CommandValidator, Validator
from settle.utils.execution import Mode

log = logging.getLogger("settle")

ValidatorFactory = Callable[[str, Optional[float]], Validator]


@dataclass(frozen=True)
class Step:
    """One minimal mutation. diff() returns them, apply mode runs them in order."""
    description: str
    run: Callable[[], None]


class Reconciler(ABC):
    """
    Compares desired against probed state and applies only the difference.

    diff() is the single comparison path: check mode reports its steps,
    apply mode runs them, so both modes agree on `changed` by construction.
    """

    kind: Kind

    def __init__(self, host: RemoteHost, *, validators: Optional[ValidatorFactory] = None):
        self.host = host
        self._validators = validators or (
            lambda template, timeout: CommandValidator(host, template, timeout=timeout)
        )

    @abstractmethod
    def diff(self, decl: ResourceDeclaration, state: ProbedState) -> List[Step]:
        """Return the steps needed to converge, empty when already converged."""

    def reconcile(self, decl: ResourceDeclaration, state: ProbedState, mode: Mode) -> ReconcileResult:
        try:
            steps = self.diff(decl, state)
        except SettleError as exc:
            return ReconcileResult(changed=False, error=_own(exc, decl))

        if not steps:
            return ReconcileResult(changed=False, detail="ok")

        detail = "; ".join(s.description for s in steps)
        if mode is Mode.CHECK:
            log.info("[%s] %s would change: %s", self.host.name, decl.id, detail)
            return ReconcileResult(changed=True, detail=detail)

        done: List[str] = []
        for step in steps:
            try:
                step.run()
            except SettleError as exc:
                log.error("[%s] %s failed at '%s': %s", self.host.name, decl.id, step.description, exc)
                return ReconcileResult(changed=bool(done), error=_own(exc, decl), detail="; ".join(done))
            done.append(step.description)

        log.info("[%s] %s changed: %s", self.host.name, decl.id, detail)
        return ReconcileResult(changed=True, detail=detail)

    # ------------------ helpers ------------------

    def validator(self, template: Optional[str], timeout: Optional[float]) -> Optional[Validator]:
        if not template:
            return None
        return self._validators(template, timeout)

    def write_file(
        self,
        decl: ResourceDeclaration,
        content: bytes,
        *,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        validate: Optional[str] = None,
    ) -> None:
        """
        stage -> (chmod/chown) -> validate -> promote. The live path is only
        touched by the final rename, so a rejected or interrupted write leaves
        it exactly as it was.
        """
        path, timeout = decl.target, decl.timeout
        staging = self.host.stage(path, content, timeout=timeout, resource=decl.id)
        try:
            if mode is not None:
                self.host.chmod(staging, mode, timeout=timeout, resource=decl.id)
            if owner or group:
                self.host.chown(staging, owner, group, timeout=timeout, resource=decl.id)
            checker = self.validator(validate, timeout)
            if checker is not None and not checker.validate(staging):
                raise ValidationFailed(f"{path}: validator rejected staged content", resource=decl.id)
            self.host.promote(staging, path, timeout=timeout, resource=decl.id)
        except Exception:
            try:
                self.host.discard(staging, timeout=timeout)
            except SettleError as cleanup_exc:
                log.warning("[%s] leaving staging file %s behind: %s", self.host.name, staging, cleanup_exc)
            raise


def _own(exc: SettleError, decl: ResourceDeclaration) -> SettleError:
    if exc.resource is None:
        exc.resource = decl.id
    return exc
