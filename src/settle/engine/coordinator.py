# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/coordinator.py

from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Mapping, Optional, Sequence, Set, Tuple

from settle.engine.handlers import HandlerDispatcher
from settle.engine.ledger import ChangeLedger
from settle.engine.models import (
    ChangeRecord,
    HandlerResult,
    HandlerSpec,
    Kind,
    ProbedState,
    ResourceDeclaration,
    RunResult,
    RunStatus,
)
from settle.engine.planner import check_order
from settle.engine.prober import FactProber
from settle.engine.resources.base import Reconciler, ValidatorFactory
from settle.engine.resources.registry import build_reconcilers
from settle.errors import (
    InvalidTransition,
    PrerequisiteUnmet,
    ProbeError,
    RunCancelled,
    SettleError,
    UnknownHandlerError,
)
from settle.remote.host import RemoteHost
from settle.remote.packages import PackageManager
from settle.remote.services import ServiceManager
from settle.utils.execution import Mode, RunOptions
from settle.utils.retry import retry

# Observer bits
from settle.observers.dispatcher import EventBus
from settle.observers.events import (
    new_ctx,
    HandlerFlushed,
    ResourceFailed,
    ResourceProbed,
    ResourceReconciled,
    RunFinished,
    RunStarted,
)

log = logging.getLogger("settle")


_TRANSITIONS: Mapping[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.INIT: frozenset({RunStatus.PROBING, RunStatus.HANDLER_FLUSH, RunStatus.FAILED}),
    RunStatus.PROBING: frozenset({RunStatus.RECONCILING, RunStatus.PROBING, RunStatus.HANDLER_FLUSH, RunStatus.FAILED}),
    RunStatus.RECONCILING: frozenset({RunStatus.PROBING, RunStatus.HANDLER_FLUSH, RunStatus.FAILED}),
    RunStatus.HANDLER_FLUSH: frozenset({RunStatus.DONE, RunStatus.FAILED}),
    RunStatus.DONE: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunCoordinator:
    """
    Converges one host: probe -> reconcile each declaration in the given
    order, then flush handlers once.

    Init -> Probing <-> Reconciling -> HandlerFlush -> Done, with Failed
    reachable from every non-terminal state. A coordinator is single use.
    """

    def __init__(
        self,
        host: RemoteHost,
        handlers: Sequence[HandlerSpec] = (),
        *,
        options: Optional[RunOptions] = None,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        packages: Optional[PackageManager] = None,
        services: Optional[ServiceManager] = None,
        validators: Optional[ValidatorFactory] = None,
        prober: Optional[FactProber] = None,
        reconcilers: Optional[Dict[Kind, Reconciler]] = None,
    ):
        self.host = host
        self.options = options or RunOptions()
        self.bus = bus or EventBus([])
        self.run_id = run_id
        self.cancel = cancel
        self.prober = prober or FactProber(host, packages=packages, services=services)
        self.reconcilers = reconcilers or build_reconcilers(
            host, packages=packages, services=services, validators=validators
        )
        self.dispatcher = HandlerDispatcher(host, handlers)
        self.ledger = ChangeLedger()
        self.state = RunStatus.INIT

    # ------------------ state machine ------------------

    def _transition(self, new: RunStatus) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new.value}")
        log.debug("[%s] %s -> %s", self.host.name, self.state.value, new.value)
        self.state = new

    # ------------------ public API ------------------

    def run(self, declarations: Sequence[ResourceDeclaration], mode: Mode) -> RunResult:
        if self.state is not RunStatus.INIT:
            raise InvalidTransition("a RunCoordinator runs exactly once")

        ordered: Tuple[ResourceDeclaration, ...] = tuple(declarations)
        ctx = new_ctx(host=self.host.name, mode=mode.value, run_id=self.run_id)
        self.bus.emit(RunStarted(resources=len(ordered), **ctx))
        log.info("[%s] %s run over %d resources", self.host.name, mode.value, len(ordered))

        try:
            check_order(ordered, bus=self.bus, run_ctx=ctx)
            for decl in ordered:
                unknown = [name for name in decl.notify if name not in self.dispatcher]
                if unknown:
                    raise UnknownHandlerError(
                        f"'{decl.id}' notifies unknown handler(s): {', '.join(unknown)}",
                        resource=decl.id,
                    )
        except SettleError as exc:
            log.error("[%s] declarations rejected: %s", self.host.name, exc)
            return self._fail(exc, mode, ctx)

        failed: Set[str] = set()
        for decl in ordered:
            if self.cancel is not None and self.cancel.is_set():
                return self._fail(
                    RunCancelled(f"cancelled before '{decl.id}'", resource=decl.id), mode, ctx
                )

            unmet = [req for req in decl.requires if req in failed]
            if unmet:
                return self._fail(
                    PrerequisiteUnmet(
                        f"'{decl.id}' not applied: prerequisite {', '.join(unmet)} failed",
                        resource=decl.id,
                    ),
                    mode,
                    ctx,
                )

            error = self._converge(decl, mode, ctx)
            if error is not None:
                failed.add(decl.id)
                if decl.required:
                    return self._fail(error, mode, ctx)

        self._transition(RunStatus.HANDLER_FLUSH)
        handler_results = self.dispatcher.flush(mode)
        for hr in handler_results:
            self.bus.emit(HandlerFlushed(
                name=hr.name,
                fired=hr.fired,
                would_fire=hr.would_fire,
                error=str(hr.error) if hr.error else None,
                **ctx,
            ))

        critical = next((hr for hr in handler_results if hr.error is not None and hr.critical), None)
        if critical is not None:
            return self._fail(critical.error, mode, ctx, handler_results=handler_results)

        self._transition(RunStatus.DONE)
        return self._finish(mode, ctx, handler_results=handler_results)

    # ------------------ internals ------------------

    def _probe(self, decl: ResourceDeclaration) -> ProbedState:
        attempts = self.options.probe_retries + 1

        def _on_retry(attempt: int, exc: Exception) -> None:
            log.warning(
                "[%s] probe of %s failed (attempt %d/%d): %s",
                self.host.name, decl.id, attempt, attempts, exc,
            )

        probe = retry(
            retries=attempts,
            delay=self.options.retry_delay,
            retry_on=(ProbeError,),
            should_retry=lambda exc: getattr(exc, "transient", False),
            on_retry=_on_retry,
            reraise=True,
        )(self.prober.probe)
        return probe(decl)

    def _converge(self, decl: ResourceDeclaration, mode: Mode, ctx: dict) -> Optional[SettleError]:
        """Probe and reconcile one declaration; returns its error, if any."""
        self._transition(RunStatus.PROBING)
        try:
            state = self._probe(decl)
        except ProbeError as exc:
            self._record_failure(decl, exc, ctx)
            return exc
        self.bus.emit(ResourceProbed(resource=decl.id, kind=decl.kind.value, **ctx))

        self._transition(RunStatus.RECONCILING)
        result = self.reconcilers[decl.kind].reconcile(decl, state, mode)
        if result.error is not None:
            self.ledger.record(ChangeRecord(
                resource=decl.id, changed=result.changed, error=result.error, detail=result.detail,
            ))
            self.bus.emit(ResourceFailed(
                resource=decl.id, error=str(result.error), required=decl.required, **ctx,
            ))
            if result.changed:
                self._notify(decl)
            return result.error

        self.ledger.record(ChangeRecord(resource=decl.id, changed=result.changed, detail=result.detail))
        self.bus.emit(ResourceReconciled(
            resource=decl.id, changed=result.changed, detail=result.detail, **ctx,
        ))
        if result.changed:
            self._notify(decl)
        return None

    def _notify(self, decl: ResourceDeclaration) -> None:
        for name in decl.notify:
            self.dispatcher.notify(name)

    def _record_failure(self, decl: ResourceDeclaration, exc: SettleError, ctx: dict) -> None:
        log.error("[%s] %s: %s", self.host.name, decl.id, exc)
        self.ledger.record(ChangeRecord(resource=decl.id, changed=False, error=exc))
        self.bus.emit(ResourceFailed(resource=decl.id, error=str(exc), required=decl.required, **ctx))

    def _fail(
        self,
        error: SettleError,
        mode: Mode,
        ctx: dict,
        *,
        handler_results: Sequence[HandlerResult] = (),
    ) -> RunResult:
        self._transition(RunStatus.FAILED)
        log.error("[%s] run failed: %s", self.host.name, error)
        return self._finish(mode, ctx, handler_results=handler_results, error=error)

    def _finish(
        self,
        mode: Mode,
        ctx: dict,
        *,
        handler_results: Sequence[HandlerResult] = (),
        error: Optional[SettleError] = None,
    ) -> RunResult:
        result = RunResult(
            host=self.host.name,
            mode=mode,
            status=self.state,
            summary=self.ledger.summary(),
            records=self.ledger.records,
            handler_results=tuple(handler_results),
            pending_handlers=tuple(self.dispatcher.pending()),
            error=error,
        )
        self.bus.emit(RunFinished(
            status=result.status.value,
            total=result.summary.total,
            changed=result.summary.changed,
            failed=result.summary.failed,
            exit_code=result.exit_code,
            error=str(error) if error else None,
            **ctx,
        ))
        changed = self.ledger.changed_ids()
        if changed:
            log.info("[%s] changed: %s", self.host.name, ", ".join(changed))
        log.info(
            "[%s] %s: total=%d changed=%d failed=%d",
            self.host.name, result.status.value,
            result.summary.total, result.summary.changed, result.summary.failed,
        )
        return result
