# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/handlers.py

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from settle.engine.models import HandlerResult, HandlerSpec, HandlerTrigger
from settle.errors import DeclarationError, HandlerExecutionError, SettleError, UnknownHandlerError
from settle.remote.host import RemoteHost
from settle.utils.execution import Mode

log = logging.getLogger("settle")


class HandlerDispatcher:
    """
    Deferred actions keyed by name. notify() only marks a trigger; nothing
    runs until flush(), and flush() runs each marked handler once, in the
    order the handlers were declared.
    """

    def __init__(self, host: RemoteHost, handlers: Sequence[HandlerSpec] = ()):
        self.host = host
        self._specs: Dict[str, HandlerSpec] = {}
        self._triggers: Dict[str, HandlerTrigger] = {}
        for spec in handlers:
            if spec.name in self._specs:
                raise DeclarationError(f"handler '{spec.name}' declared twice")
            self._specs[spec.name] = spec
            self._triggers[spec.name] = HandlerTrigger(name=spec.name)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def notify(self, name: str) -> None:
        trigger = self._triggers.get(name)
        if trigger is None:
            raise UnknownHandlerError(f"no handler named '{name}'")
        if not trigger.notified:
            log.debug("[%s] handler %s queued", self.host.name, name)
        trigger.notified = True

    def pending(self) -> List[str]:
        return [t.name for t in self._triggers.values() if t.notified]

    def flush(self, mode: Mode) -> List[HandlerResult]:
        results: List[HandlerResult] = []
        for name in self.pending():
            spec = self._specs[name]
            # cleared before running so a handler can never fire twice in one run
            self._triggers[name].notified = False

            if mode is Mode.CHECK:
                log.info("[%s] handler %s would fire", self.host.name, name)
                results.append(HandlerResult(name=name, fired=False, would_fire=True, critical=spec.critical))
                continue

            results.append(self._fire(spec))
        return results

    def _fire(self, spec: HandlerSpec) -> HandlerResult:
        log.info("[%s] firing handler %s", self.host.name, spec.name)
        try:
            res = self.host.run(spec.command, timeout=spec.timeout)
        except SettleError as exc:
            exc.resource = exc.resource or spec.name
            log.error("[%s] handler %s failed: %s", self.host.name, spec.name, exc)
            return HandlerResult(name=spec.name, fired=True, critical=spec.critical, error=exc)

        if not res.ok:
            err = HandlerExecutionError(
                f"{spec.command!r} exited {res.exit_code}: {res.stderr.strip()}",
                resource=spec.name,
            )
            log.error("[%s] handler %s failed: %s", self.host.name, spec.name, err)
            return HandlerResult(name=spec.name, fired=True, critical=spec.critical, error=err)

        return HandlerResult(name=spec.name, fired=True, critical=spec.critical)
