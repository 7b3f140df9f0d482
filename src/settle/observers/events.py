# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    host: str         # inventory name of the target host
    mode: str         # check / apply

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(host: str, mode: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "host": host,
        "mode": mode,
    }


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    resources: int

@dataclass(frozen=True)
class OrderChecked(BaseEvent):
    order: List[str]
    error: Optional[str] = None

@dataclass(frozen=True)
class RunFinished(BaseEvent):
    status: str
    total: int
    changed: int
    failed: int
    exit_code: int
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Resource lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ResourceProbed(BaseEvent):
    resource: str
    kind: str

@dataclass(frozen=True)
class ResourceReconciled(BaseEvent):
    resource: str
    changed: bool
    detail: str = ""

@dataclass(frozen=True)
class ResourceFailed(BaseEvent):
    resource: str
    error: str
    required: bool = False


# ---------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HandlerFlushed(BaseEvent):
    name: str
    fired: bool
    would_fire: bool
    error: Optional[str] = None
