# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/engine/resources/files.py

from __future__ import annotations

import functools
import re
from typing import List, Optional

from settle.engine.models import (
    DirectoryDesired,
    DirectoryState,
    FileDesired,
    FileState,
    Kind,
    LineDesired,
    PathStat,
    ResourceDeclaration,
)
from settle.engine.resources.base import Reconciler, Step
from settle.errors import ApplyFailed


def _attribute_steps(
    reconciler: Reconciler,
    decl: ResourceDeclaration,
    stat: Optional[PathStat],
    mode: Optional[int],
    owner: Optional[str],
    group: Optional[str],
) -> List[Step]:
    """chmod/chown steps for whatever attribute differs from the probe."""
    host, path, timeout = reconciler.host, decl.target, decl.timeout
    steps: List[Step] = []
    if mode is not None and (stat is None or stat.mode != mode):
        steps.append(Step(
            f"mode {mode:04o}",
            functools.partial(host.chmod, path, mode, timeout=timeout, resource=decl.id),
        ))
    want_owner = owner if owner and (stat is None or stat.owner != owner) else None
    want_group = group if group and (stat is None or stat.group != group) else None
    if want_owner or want_group:
        label = ":".join(x for x in (want_owner, want_group) if x)
        steps.append(Step(
            f"owner {label}",
            functools.partial(host.chown, path, want_owner, want_group, timeout=timeout, resource=decl.id),
        ))
    return steps


class FileReconciler(Reconciler):
    kind = Kind.FILE

    def diff(self, decl: ResourceDeclaration, state: FileState) -> List[Step]:
        desired: FileDesired = decl.desired  # type: ignore[assignment]

        if not desired.present:
            if not state.exists:
                return []
            return [Step(
                "remove",
                functools.partial(self.host.remove, decl.target, timeout=decl.timeout, resource=decl.id),
            )]

        content = desired.content
        if content is None and not state.exists:
            content = b""

        if content is not None and (not state.exists or state.content != content):
            # mode/owner ride along on the staged file so the promoted file is final
            mode = desired.mode if desired.mode is not None and (
                not state.exists or state.stat.mode != desired.mode) else None
            owner = desired.owner if desired.owner and (
                not state.exists or state.stat.owner != desired.owner) else None
            group = desired.group if desired.group and (
                not state.exists or state.stat.group != desired.group) else None
            verb = "create" if not state.exists else "update content"
            return [Step(
                f"{verb} (sha256 {desired.digest[:12] if desired.digest else 'empty'})",
                functools.partial(
                    self.write_file, decl, content,
                    mode=mode, owner=owner, group=group, validate=desired.validate,
                ),
            )]

        return _attribute_steps(self, decl, state.stat, desired.mode, desired.owner, desired.group)


class DirectoryReconciler(Reconciler):
    kind = Kind.DIRECTORY

    def diff(self, decl: ResourceDeclaration, state: DirectoryState) -> List[Step]:
        desired: DirectoryDesired = decl.desired  # type: ignore[assignment]

        if not desired.present:
            if not state.exists:
                return []
            return [Step(
                "remove tree",
                functools.partial(
                    self.host.remove, decl.target, recursive=True, timeout=decl.timeout, resource=decl.id,
                ),
            )]

        steps: List[Step] = []
        if not state.exists:
            steps.append(Step(
                "create",
                functools.partial(self.host.mkdir, decl.target, timeout=decl.timeout, resource=decl.id),
            ))
        return steps + _attribute_steps(self, decl, state.stat, desired.mode, desired.owner, desired.group)


# ---------------------------------------------------------------------
# line-in-file
# ---------------------------------------------------------------------
def edit_lines(text: str, line: Optional[str], regexp: Optional[str], present: bool) -> str:
    """
    Return text with one line ensured present or absent. Every other byte
    of the input, including line endings, is kept as it was.
    """
    lines = text.splitlines(keepends=True)
    pattern = re.compile(regexp) if regexp else None

    def matches(raw: str) -> bool:
        body = raw.rstrip("\r\n")
        if pattern is not None:
            return pattern.search(body) is not None
        return body == line

    if not present:
        return "".join(raw for raw in lines if not matches(raw))

    assert line is not None
    if pattern is not None:
        hits = [i for i, raw in enumerate(lines) if matches(raw)]
        if hits:
            last = hits[-1]
            old = lines[last]
            ending = old[len(old.rstrip("\r\n")):]
            lines[last] = line + ending
            return "".join(lines)

    if any(raw.rstrip("\r\n") == line for raw in lines):
        return text

    prefix = text if not text or text.endswith("\n") else text + "\n"
    return prefix + line + "\n"


class LineInFileReconciler(Reconciler):
    kind = Kind.LINE_IN_FILE

    def diff(self, decl: ResourceDeclaration, state: FileState) -> List[Step]:
        desired: LineDesired = decl.desired  # type: ignore[assignment]

        if not state.exists:
            if not desired.present:
                return []
            if not desired.create:
                raise ApplyFailed(f"{decl.target} does not exist and create is off", resource=decl.id)
            current = b""
        else:
            current = state.content or b""

        text = current.decode("utf-8", errors="surrogateescape")
        edited = edit_lines(text, desired.line, desired.regexp, desired.present)
        if state.exists and edited == text:
            return []

        new_content = edited.encode("utf-8", errors="surrogateescape")
        if desired.present:
            description = f"ensure line {desired.line!r}"
        else:
            description = f"remove lines matching {desired.regexp or desired.line!r}"
        return [Step(
            description,
            functools.partial(self.write_file, decl, new_content, validate=desired.validate),
        )]
