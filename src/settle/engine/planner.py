# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/planner.py

from __future__ import annotations

from typing import Dict, Optional, Sequence, Set

from settle.engine.models import ResourceDeclaration
from settle.errors import DeclarationError, PrerequisiteUnmet

# Observer bits
from settle.observers.dispatcher import EventBus
from settle.observers.events import OrderChecked


def check_order(
    declarations: Sequence[ResourceDeclaration],
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> None:
    """
    Verify the caller-declared order honours every `requires` edge: each
    prerequisite must exist and appear before the resource that needs it.
    The order is never changed here.
    """
    seen: Set[str] = set()
    position: Dict[str, int] = {}
    try:
        for i, decl in enumerate(declarations):
            if decl.id in position:
                raise DeclarationError(f"duplicate resource id '{decl.id}'", resource=decl.id)
            position[decl.id] = i

        for decl in declarations:
            for req in decl.requires:
                if req == decl.id:
                    raise PrerequisiteUnmet(f"'{decl.id}' requires itself", resource=decl.id)
                if req not in position:
                    raise PrerequisiteUnmet(
                        f"'{decl.id}' requires unknown resource '{req}'", resource=decl.id
                    )
                if req not in seen:
                    raise PrerequisiteUnmet(
                        f"'{decl.id}' is declared before its prerequisite '{req}'", resource=decl.id
                    )
            seen.add(decl.id)
    except (DeclarationError, PrerequisiteUnmet) as e:
        if bus and run_ctx:
            bus.emit(OrderChecked(order=[d.id for d in declarations], error=str(e), **run_ctx))
        raise

    if bus and run_ctx:
        bus.emit(OrderChecked(order=[d.id for d in declarations], error=None, **run_ctx))
