# src/settle/config/models.py

from __future__ import annotations

import re
from abc import abstractmethod
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _parse_mode(v: Any) -> Optional[int]:
    """
    Accept "0644" / "644" strings, or ints as PyYAML reads an unquoted 0644
    (already octal-decoded).
    """
    if v is None:
        return None
    if isinstance(v, bool):
        raise ValueError("mode must be an octal string like '0644'")
    if isinstance(v, int):
        if not 0 <= v <= 0o7777:
            raise ValueError(f"mode {v} out of range")
        return v
    s = str(v).strip()
    if not re.fullmatch(r"0?[0-7]{3,4}", s):
        raise ValueError(f"mode {v!r} is not an octal permission string")
    return int(s, 8)


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------
class HostSpec(BaseModel):
    """A host you converge. connection=local runs on the controller itself."""
    model_config = ConfigDict(extra="forbid")

    name: str
    address: Optional[str] = None          # IP or DNS, defaults to name
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    pkey_path: Optional[Path] = None
    connection: Literal["ssh", "local"] = "ssh"
    become: bool = False
    become_password: Optional[str] = None
    vars: Dict[str, Any] = Field(default_factory=dict)


class Inventory(BaseModel):
    model_config = ConfigDict(extra="forbid")

    defaults: Dict[str, Any] = Field(default_factory=dict)
    hosts: List[HostSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "Inventory":
        seen = set()
        for h in self.hosts:
            if h.name in seen:
                raise ValueError(f"host '{h.name}' listed twice")
            seen.add(h.name)
        return self

    def select(self, names: Optional[List[str]] = None) -> List[HostSpec]:
        if not names:
            return list(self.hosts)
        by_name = {h.name: h for h in self.hosts}
        missing = [n for n in names if n not in by_name]
        if missing:
            raise ValueError(f"unknown host(s): {', '.join(missing)}")
        return [by_name[n] for n in names]


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------
class HandlerModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    command: str
    critical: bool = False
    timeout: Optional[float] = None


class _ResourceBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    notify: List[str] = Field(default_factory=list)
    requires: List[str] = Field(default_factory=list)
    required: bool = False
    timeout: Optional[float] = None

    @abstractmethod
    def target(self) -> str:
        """What the default id is built from."""

    @model_validator(mode="after")
    def _default_id(self):
        if not self.id:
            self.id = f"{self.kind}:{self.target()}"
        return self


class _PathAttrs(_ResourceBase):
    path: str
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _absolute(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"path must be absolute, got {v!r}")
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, v: Any) -> Optional[int]:
        return _parse_mode(v)

    def target(self) -> str:
        return self.path


class FileModel(_PathAttrs):
    kind: Literal["file"]
    state: Literal["present", "absent"] = "present"
    content: Optional[str] = None
    template: Optional[str] = None        # relative to the declaration file
    validate_cmd: Optional[str] = Field(default=None, alias="validate")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="after")
    def _one_source(self) -> "FileModel":
        if self.content is not None and self.template is not None:
            raise ValueError(f"{self.path}: set either content or template, not both")
        return self


class DirectoryModel(_PathAttrs):
    kind: Literal["directory"]
    state: Literal["present", "absent"] = "present"


class LineInFileModel(_ResourceBase):
    kind: Literal["line-in-file"]
    path: str
    line: Optional[str] = None
    regexp: Optional[str] = None
    state: Literal["present", "absent"] = "present"
    create: bool = True
    validate_cmd: Optional[str] = Field(default=None, alias="validate")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("path")
    @classmethod
    def _absolute(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"path must be absolute, got {v!r}")
        return v

    @field_validator("regexp")
    @classmethod
    def _compiles(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as exc:
                raise ValueError(f"bad regexp {v!r}: {exc}") from exc
        return v

    @model_validator(mode="after")
    def _needs_line(self) -> "LineInFileModel":
        if self.state == "present" and self.line is None:
            raise ValueError(f"{self.path}: state=present needs 'line'")
        if self.state == "absent" and self.line is None and self.regexp is None:
            raise ValueError(f"{self.path}: state=absent needs 'line' or 'regexp'")
        if self.line is not None and ("\n" in self.line or "\r" in self.line):
            raise ValueError(f"{self.path}: 'line' must be a single line")
        return self

    def target(self) -> str:
        return self.path


class PackageModel(_ResourceBase):
    kind: Literal["package"]
    name: str
    state: Literal["present", "absent"] = "present"
    version: Optional[str] = None

    def target(self) -> str:
        return self.name


class ServiceModel(_ResourceBase):
    kind: Literal["service"]
    name: str
    enabled: Optional[bool] = None
    running: Optional[bool] = None

    @model_validator(mode="after")
    def _something_to_do(self) -> "ServiceModel":
        if self.enabled is None and self.running is None:
            raise ValueError(f"service {self.name}: set 'enabled' and/or 'running'")
        return self

    def target(self) -> str:
        return self.name


class CommandModel(_ResourceBase):
    kind: Literal["command"]
    command: str
    creates: Optional[str] = None
    unless: Optional[str] = None

    @model_validator(mode="after")
    def _guarded(self) -> "CommandModel":
        if not self.creates and not self.unless:
            raise ValueError(f"command {self.command!r}: needs a 'creates' or 'unless' guard")
        return self

    def target(self) -> str:
        return self.command


ResourceModel = Annotated[
    Union[FileModel, DirectoryModel, LineInFileModel, PackageModel, ServiceModel, CommandModel],
    Field(discriminator="kind"),
]


class DeclarationSet(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vars: Dict[str, Any] = Field(default_factory=dict)
    handlers: List[HandlerModel] = Field(default_factory=list)
    resources: List[ResourceModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def _consistent(self) -> "DeclarationSet":
        names = [h.name for h in self.handlers]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise ValueError(f"duplicate handler name(s): {', '.join(sorted(dupes))}")

        ids = [r.id for r in self.resources]
        dupes = {i for i in ids if ids.count(i) > 1}
        if dupes:
            raise ValueError(f"duplicate resource id(s): {', '.join(sorted(dupes))}")

        known = set(names)
        for r in self.resources:
            unknown = [n for n in r.notify if n not in known]
            if unknown:
                raise ValueError(f"resource '{r.id}' notifies unknown handler(s): {', '.join(unknown)}")
        return self
