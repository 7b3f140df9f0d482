# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/config/secrets.py

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

import yaml

from settle.errors import DeclarationError

log = logging.getLogger("settle")


class SecretResolver(Protocol):
    def resolve(self, ref: str) -> str: ...


def _as_str(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, (bytes, bytearray)):
        return v.decode("utf-8", errors="replace")
    return str(v)


class YamlSecretResolver:
    """
    Secrets from a (decrypted) secrets.yaml. Refs are dotted paths into the
    mapping, e.g. ``ssh.deploy_key``.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._raw: Optional[dict] = None

    def _load(self) -> dict:
        if self._raw is None:
            data = yaml.safe_load(self.path.read_text()) or {}
            if not isinstance(data, dict):
                raise DeclarationError(f"Expected mapping in {self.path}, got {type(data).__name__}")
            self._raw = data
        return self._raw

    def resolve(self, ref: str) -> str:
        node: Any = self._load()
        for part in ref.split("."):
            if not isinstance(node, dict) or part not in node:
                raise DeclarationError(f"secret '{ref}' not found in {self.path}")
            node = node[part]
        if isinstance(node, (dict, list)):
            raise DeclarationError(f"secret '{ref}' in {self.path} is not a scalar")
        return _as_str(node)


class EnvSecretResolver:
    """``db.password`` -> ``$SETTLE_SECRET_DB_PASSWORD``."""

    def __init__(self, prefix: str = "SETTLE_SECRET_"):
        self.prefix = prefix

    def env_name(self, ref: str) -> str:
        return self.prefix + "".join(c if c.isalnum() else "_" for c in ref).upper()

    def resolve(self, ref: str) -> str:
        name = self.env_name(ref)
        if name not in os.environ:
            raise DeclarationError(f"secret '{ref}' not set (expected ${name})")
        return os.environ[name]


class ChainSecretResolver:
    def __init__(self, resolvers: Sequence[SecretResolver]):
        self.resolvers = list(resolvers)

    def resolve(self, ref: str) -> str:
        misses = []
        for r in self.resolvers:
            try:
                return r.resolve(ref)
            except DeclarationError as exc:
                misses.append(str(exc))
        raise DeclarationError(f"secret '{ref}' unresolved: " + "; ".join(misses))


def find_secrets_file(declaration_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. SETTLE_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the declaration file
    """
    env = os.environ.get("SETTLE_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("SETTLE_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = Path(declaration_path).parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def default_resolver(declaration_path: Path) -> SecretResolver:
    resolvers: list[SecretResolver] = []
    secrets_path = find_secrets_file(declaration_path)
    if secrets_path:
        log.debug("Resolving secrets from %s", secrets_path)
        resolvers.append(YamlSecretResolver(secrets_path))
    resolvers.append(EnvSecretResolver())
    return ChainSecretResolver(resolvers)
