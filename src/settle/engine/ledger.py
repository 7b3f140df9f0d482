# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/ledger.py

from __future__ import annotations

from typing import List, Tuple

from settle.engine.models import ChangeRecord, LedgerSummary


class ChangeLedger:
    """Append-only outcome log for one run."""

    def __init__(self) -> None:
        self._records: List[ChangeRecord] = []

    def record(self, entry: ChangeRecord) -> None:
        self._records.append(entry)

    @property
    def records(self) -> Tuple[ChangeRecord, ...]:
        return tuple(self._records)

    def changed_ids(self) -> List[str]:
        return [r.resource for r in self._records if r.changed]

    def summary(self) -> LedgerSummary:
        changed = sum(1 for r in self._records if r.changed)
        failed = sum(1 for r in self._records if r.error is not None)
        return LedgerSummary(total=len(self._records), changed=changed, failed=failed)

    def __len__(self) -> int:
        return len(self._records)
