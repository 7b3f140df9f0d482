# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/config/loader.py

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from settle.config.models import (
    CommandModel,
    DeclarationSet,
    DirectoryModel,
    FileModel,
    HostSpec,
    Inventory,
    LineInFileModel,
    PackageModel,
    ServiceModel,
)
from settle.config.render import TemplateRenderer
from settle.config.secrets import SecretResolver, default_resolver
from settle.engine.models import (
    CommandDesired,
    DirectoryDesired,
    FileDesired,
    HandlerSpec,
    Kind,
    LineDesired,
    PackageDesired,
    ResourceDeclaration,
    ServiceDesired,
)
from settle.errors import DeclarationError

log = logging.getLogger("settle")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into a copy of *base*; override wins.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as exc:
        raise DeclarationError(f"cannot read {path}: {exc}") from exc
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as exc:
        raise DeclarationError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise DeclarationError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    return data


def load_declarations(path: str | Path) -> DeclarationSet:
    """
    Load and validate a declaration file::

        vars: {...}
        handlers:
          - name: restart-sshd
            command: systemctl restart ssh
        resources:
          - kind: line-in-file
            path: /etc/ssh/sshd_config
            ...
    """
    path = Path(path)
    data = _load_yaml(path)
    try:
        return DeclarationSet.model_validate(data)
    except ValidationError as exc:
        raise DeclarationError(f"{path}: {exc}") from exc


def load_inventory(path: str | Path) -> Inventory:
    """
    Load an inventory. ``defaults`` is deep-merged under every host entry,
    so a host only spells out what differs.
    """
    path = Path(path)
    data = _load_yaml(path)
    defaults = data.get("defaults") or {}
    hosts = []
    for entry in data.get("hosts") or []:
        if not isinstance(entry, dict):
            raise DeclarationError(f"{path}: host entries must be mappings, got {entry!r}")
        hosts.append(_deep_merge(defaults, entry))
    try:
        return Inventory.model_validate({"defaults": defaults, "hosts": hosts})
    except ValidationError as exc:
        raise DeclarationError(f"{path}: {exc}") from exc


def local_inventory(become: bool = False) -> Inventory:
    return Inventory(hosts=[HostSpec(name="localhost", connection="local", become=become)])


def host_variables(decls: DeclarationSet, host: HostSpec) -> Dict[str, Any]:
    """Declaration vars, overlaid by the host's (already defaulted) vars."""
    return _deep_merge(decls.vars, host.vars)


def _single_line(value: Optional[str], resource: str) -> Optional[str]:
    """
    A rendered line may pick up a trailing newline from a secret or a YAML
    block scalar; drop one. Anything else spanning lines is rejected.
    """
    if value is None:
        return None
    if value.endswith("\r\n"):
        value = value[:-2]
    elif value.endswith("\n"):
        value = value[:-1]
    if "\n" in value or "\r" in value:
        raise DeclarationError(f"'{resource}': rendered line spans several lines", resource=resource)
    return value


def _host_facts(host: HostSpec) -> Dict[str, Any]:
    return {
        "name": host.name,
        "address": host.address or host.name,
        "port": host.port,
        "username": host.username,
    }


def build_run(
    decls: DeclarationSet,
    host: HostSpec,
    *,
    base_dir: Path,
    secrets: Optional[SecretResolver] = None,
) -> Tuple[List[ResourceDeclaration], List[HandlerSpec]]:
    """
    Render one host's frozen declarations and handlers. Everything a run
    needs is resolved here, so nothing about the desired state can move
    once the run starts.
    """
    variables = host_variables(decls, host)
    facts = _host_facts(host)
    renderer = TemplateRenderer(base_dir, secrets=secrets)

    def render(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return renderer.render_string(value, variables, facts)

    declarations: List[ResourceDeclaration] = []
    for model in decls.resources:
        common = dict(
            id=model.id,
            notify=tuple(model.notify),
            requires=tuple(model.requires),
            required=model.required,
            timeout=model.timeout,
        )
        if isinstance(model, FileModel):
            if model.template is not None:
                text = renderer.render_file(model.template, variables, facts)
            else:
                text = render(model.content)
            declarations.append(ResourceDeclaration(
                kind=Kind.FILE,
                target=render(model.path),
                desired=FileDesired(
                    present=model.state == "present",
                    content=text.encode("utf-8") if text is not None else None,
                    mode=model.mode,
                    owner=model.owner,
                    group=model.group,
                    validate=model.validate_cmd,
                ),
                **common,
            ))
        elif isinstance(model, DirectoryModel):
            declarations.append(ResourceDeclaration(
                kind=Kind.DIRECTORY,
                target=render(model.path),
                desired=DirectoryDesired(
                    present=model.state == "present",
                    mode=model.mode,
                    owner=model.owner,
                    group=model.group,
                ),
                **common,
            ))
        elif isinstance(model, LineInFileModel):
            declarations.append(ResourceDeclaration(
                kind=Kind.LINE_IN_FILE,
                target=render(model.path),
                desired=LineDesired(
                    line=_single_line(render(model.line), model.id),
                    regexp=model.regexp,
                    present=model.state == "present",
                    create=model.create,
                    validate=model.validate_cmd,
                ),
                **common,
            ))
        elif isinstance(model, PackageModel):
            declarations.append(ResourceDeclaration(
                kind=Kind.PACKAGE,
                target=model.name,
                desired=PackageDesired(present=model.state == "present", version=render(model.version)),
                **common,
            ))
        elif isinstance(model, ServiceModel):
            declarations.append(ResourceDeclaration(
                kind=Kind.SERVICE,
                target=model.name,
                desired=ServiceDesired(enabled=model.enabled, running=model.running),
                **common,
            ))
        elif isinstance(model, CommandModel):
            command = render(model.command)
            declarations.append(ResourceDeclaration(
                kind=Kind.COMMAND,
                target=command,
                desired=CommandDesired(
                    command=command,
                    creates=render(model.creates),
                    unless=render(model.unless),
                ),
                **common,
            ))
        else:
            raise DeclarationError(f"unsupported resource model {type(model).__name__}")

    handlers = [
        HandlerSpec(name=h.name, command=render(h.command), critical=h.critical, timeout=h.timeout)
        for h in decls.handlers
    ]
    log.debug("[%s] built %d resources, %d handlers", host.name, len(declarations), len(handlers))
    return declarations, handlers


def load_run(
    declaration_path: str | Path,
    host: HostSpec,
    *,
    secrets: Optional[SecretResolver] = None,
) -> Tuple[List[ResourceDeclaration], List[HandlerSpec]]:
    declaration_path = Path(declaration_path)
    decls = load_declarations(declaration_path)
    return build_run(
        decls,
        host,
        base_dir=declaration_path.parent,
        secrets=secrets or default_resolver(declaration_path),
    )
