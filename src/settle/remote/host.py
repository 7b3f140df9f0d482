# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/remote/host.py

from __future__ import annotations

import base64
import binascii
import logging
import posixpath
import secrets
import shlex
from typing import Optional

from settle.engine.models import PathStat
from settle.errors import ApplyFailed, ProbeError
from settle.remote.channel import Channel, ExecResult

log = logging.getLogger("settle")

# keeps every `bash -c` argument well below the kernel's per-argument limit
_CHUNK = 48 * 1024


def _q(s: str) -> str:
    return shlex.quote(s)


def _missing(res: ExecResult) -> bool:
    err = res.stderr
    return "No such file or directory" in err or "Not a directory" in err


def _probe_failure(path: str, res: ExecResult, resource: Optional[str]) -> ProbeError:
    err = res.stderr.strip()
    if "Permission denied" in err or "Operation not permitted" in err:
        return ProbeError("permission", resource, f"{path}: {err}")
    return ProbeError("malformed", resource, f"{path}: exit {res.exit_code}: {err}")


class RemoteHost:
    """
    File and command primitives on one host, built on a Channel.

    Read operations raise ProbeError, mutating ones raise ApplyFailed.
    Timeouts and connection loss surface as ExecutionTimeout / ConnectionFailed
    straight from the channel.
    """

    def __init__(self, channel: Channel, *, timeout: float = 60.0, name: str = "localhost"):
        self.channel = channel
        self.timeout = timeout
        self.name = name

    # ------------------ commands ------------------

    def run(self, command: str, *, timeout: Optional[float] = None) -> ExecResult:
        return self.channel.execute(command, timeout or self.timeout)

    def check(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        resource: Optional[str] = None,
    ) -> ExecResult:
        res = self.run(command, timeout=timeout)
        if not res.ok:
            raise ApplyFailed(
                f"{command!r} exited {res.exit_code}: {res.stderr.strip()}",
                resource=resource,
            )
        return res

    # ------------------ reads ------------------

    def stat(
        self, path: str, *, timeout: Optional[float] = None, resource: Optional[str] = None
    ) -> Optional[PathStat]:
        q = _q(path)
        res = self.run(f"LC_ALL=C stat -L -c '%F|%a|%U|%G' -- {q}", timeout=timeout)
        if not res.ok:
            if _missing(res):
                return None
            raise _probe_failure(path, res, resource)
        out = res.stdout.strip()
        parts = out.split("|")
        if len(parts) != 4:
            raise ProbeError("malformed", resource, f"{path}: unexpected stat output {out!r}")
        ftype, mode, owner, group = parts
        if "directory" in ftype:
            kind = "directory"
        elif "regular" in ftype:
            kind = "file"
        else:
            kind = "other"
        try:
            mode_int = int(mode, 8)
        except ValueError as exc:
            raise ProbeError("malformed", resource, f"{path}: bad mode {mode!r}") from exc
        return PathStat(kind=kind, mode=mode_int, owner=owner, group=group)

    def read_bytes(
        self, path: str, *, timeout: Optional[float] = None, resource: Optional[str] = None
    ) -> Optional[bytes]:
        q = _q(path)
        res = self.run(f"LC_ALL=C base64 -w 0 -- {q}", timeout=timeout)
        if not res.ok:
            if _missing(res):
                return None
            raise _probe_failure(path, res, resource)
        out = res.stdout.strip()
        try:
            return base64.b64decode(out, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProbeError("malformed", resource, f"{path}: undecodable content") from exc

    def exists(self, path: str, *, timeout: Optional[float] = None) -> bool:
        return self.run(f"test -e {_q(path)}", timeout=timeout).ok

    # ------------------ writes ------------------

    def staging_path(self, path: str) -> str:
        """Staging sits next to the live file so promotion is a same-filesystem rename."""
        parent = posixpath.dirname(path) or "."
        return posixpath.join(parent, f".{posixpath.basename(path)}.settle-{secrets.token_hex(4)}")

    def stage(
        self,
        path: str,
        content: bytes,
        *,
        timeout: Optional[float] = None,
        resource: Optional[str] = None,
    ) -> str:
        """
        Write content to a fresh staging file. If the live file exists its
        mode and ownership are copied first so promotion only changes content.
        """
        staging = self.staging_path(path)
        q, s = _q(path), _q(staging)
        encoded = base64.b64encode(content).decode("ascii")
        try:
            self.check(
                f"if [ -e {q} ]; then cp -p -- {q} {s}; fi && : > {s}",
                timeout=timeout,
                resource=resource,
            )
            for start in range(0, len(encoded), _CHUNK):
                chunk = encoded[start:start + _CHUNK]
                self.check(
                    f"printf '%s' {chunk} | base64 -d >> {s}",
                    timeout=timeout,
                    resource=resource,
                )
        except Exception:
            self.discard(staging, timeout=timeout)
            raise
        log.debug("[%s] staged %d bytes for %s at %s", self.name, len(content), path, staging)
        return staging

    def promote(
        self, staging: str, path: str, *, timeout: Optional[float] = None, resource: Optional[str] = None
    ) -> None:
        self.check(f"mv -f -- {_q(staging)} {_q(path)}", timeout=timeout, resource=resource)

    def discard(self, staging: str, *, timeout: Optional[float] = None) -> None:
        res = self.run(f"rm -f -- {_q(staging)}", timeout=timeout)
        if not res.ok:
            log.warning("[%s] could not remove staging file %s: %s", self.name, staging, res.stderr.strip())

    def chmod(
        self, path: str, mode: int, *, timeout: Optional[float] = None, resource: Optional[str] = None
    ) -> None:
        self.check(f"chmod {mode:04o} -- {_q(path)}", timeout=timeout, resource=resource)

    def chown(
        self,
        path: str,
        owner: Optional[str],
        group: Optional[str],
        *,
        timeout: Optional[float] = None,
        resource: Optional[str] = None,
    ) -> None:
        if owner and group:
            spec = f"{owner}:{group}"
        elif owner:
            spec = owner
        elif group:
            spec = f":{group}"
        else:
            return
        self.check(f"chown {_q(spec)} -- {_q(path)}", timeout=timeout, resource=resource)

    def mkdir(self, path: str, *, timeout: Optional[float] = None, resource: Optional[str] = None) -> None:
        self.check(f"mkdir -p -- {_q(path)}", timeout=timeout, resource=resource)

    def remove(
        self,
        path: str,
        *,
        recursive: bool = False,
        timeout: Optional[float] = None,
        resource: Optional[str] = None,
    ) -> None:
        flags = "-rf" if recursive else "-f"
        self.check(f"rm {flags} -- {_q(path)}", timeout=timeout, resource=resource)
