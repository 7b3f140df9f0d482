# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/remote/channel.py

from __future__ import annotations

import logging
import shlex
import socket
import subprocess
from dataclasses import dataclass
from typing import Optional, Protocol

import paramiko

from settle.config.models import HostSpec
from settle.errors import ConnectionFailed, ExecutionTimeout
from settle.utils.execution import RunOptions
from settle.utils.retry import RetryError, retry

log = logging.getLogger("settle")


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Channel(Protocol):
    """
    Remote execution channel. Transport and auth are the implementation's business.
    """

    def execute(self, command: str, timeout: float) -> ExecResult: ...

    def close(self) -> None: ...


def _become(command: str, become: bool, has_password: bool) -> str:
    if not become:
        return f"bash -c {shlex.quote(command)}"
    if has_password:
        return f"sudo -S -p '' bash -c {shlex.quote(command)}"
    return f"sudo -n bash -c {shlex.quote(command)}"


class SSHChannel:
    def __init__(
        self,
        client: paramiko.SSHClient,
        *,
        become: bool = False,
        become_password: Optional[str] = None,
        label: str = "",
    ):
        self.client = client
        self.become = become
        self.become_password = become_password
        self.label = label

    def execute(self, command: str, timeout: float) -> ExecResult:
        wrapped = _become(command, self.become, bool(self.become_password))
        log.debug("[%s] $ %s", self.label, command)
        try:
            stdin, stdout, stderr = self.client.exec_command(wrapped, timeout=timeout)
            if self.become and self.become_password:
                stdin.write(self.become_password + "\n")
                stdin.flush()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            channel = stdout.channel
            if not channel.status_event.wait(timeout):
                raise ExecutionTimeout(f"no exit status after {timeout}s: {command}")
            rc = channel.recv_exit_status()
        except socket.timeout as exc:
            raise ExecutionTimeout(f"timed out after {timeout}s: {command}") from exc
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectionFailed(f"{self.label}: {type(exc).__name__}: {exc}") from exc
        log.debug("[%s] exit=%d", self.label, rc)
        return ExecResult(stdout=out, stderr=err, exit_code=rc)

    def close(self) -> None:
        self.client.close()


class LocalChannel:
    """Runs commands on the controller itself (connection: local)."""

    def __init__(self, *, become: bool = False, label: str = "localhost"):
        self.become = become
        self.label = label

    def execute(self, command: str, timeout: float) -> ExecResult:
        argv = ["bash", "-c", command]
        if self.become:
            argv = ["sudo", "-n"] + argv
        log.debug("[%s] $ %s", self.label, command)
        try:
            cp = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutionTimeout(f"timed out after {timeout}s: {command}") from exc
        except OSError as exc:
            raise ConnectionFailed(f"{self.label}: cannot spawn shell: {exc}") from exc
        log.debug("[%s] exit=%d", self.label, cp.returncode)
        return ExecResult(stdout=cp.stdout, stderr=cp.stderr, exit_code=cp.returncode)

    def close(self) -> None:
        pass


def _load_pkey(path: str) -> Optional[paramiko.PKey]:
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(path)
        except paramiko.SSHException:
            continue
    raise ConnectionFailed(f"Unsupported private key format for {path}")


def open_ssh(host: HostSpec, *, connect_timeout: float = 20.0) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_pkey(str(host.pkey_path.expanduser())) if host.pkey_path else None

    client.connect(
        hostname=host.address or host.name,
        port=host.port,
        username=host.username,
        password=host.password if not pkey else None,
        pkey=pkey,
        timeout=connect_timeout,
        allow_agent=pkey is None,
        look_for_keys=pkey is None,
    )
    return client


def open_channel(host: HostSpec, options: Optional[RunOptions] = None) -> Channel:
    """
    Build the channel for one inventory host, retrying the SSH handshake
    since freshly provisioned hosts may not accept connections yet.
    """
    options = options or RunOptions()
    if host.connection == "local":
        return LocalChannel(become=host.become, label=host.name)

    def _on_retry(attempt: int, exc: Exception) -> None:
        log.info(
            "[%s] SSH not ready (attempt %d/%d, %s: %s), retrying in %ss...",
            host.name, attempt, options.connect_retries, type(exc).__name__, exc,
            options.retry_delay,
        )

    @retry(
        retries=options.connect_retries,
        delay=options.retry_delay,
        retry_on=(paramiko.SSHException, OSError),
        should_retry=lambda exc: not isinstance(exc, paramiko.AuthenticationException),
        on_retry=_on_retry,
    )
    def _connect() -> paramiko.SSHClient:
        return open_ssh(host, connect_timeout=options.connect_timeout)

    try:
        client = _connect()
    except paramiko.AuthenticationException as exc:
        raise ConnectionFailed(f"authentication failed for {host.username}@{host.name}") from exc
    except RetryError as exc:
        raise ConnectionFailed(
            f"Failed to SSH into {host.address or host.name} as '{host.username}': {exc.__cause__}"
        ) from exc

    return SSHChannel(
        client,
        become=host.become,
        become_password=host.become_password,
        label=host.name,
    )
