# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/settle/utils/serialize.py

from dataclasses import is_dataclass, fields
from enum import Enum
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel

from settle.errors import SettleError


def to_jsonable(obj: Any) -> Any:
    # fields() rather than asdict() so nested exceptions are not deep-copied
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}

    if isinstance(obj, BaseModel):
        return to_jsonable(obj.model_dump())

    if isinstance(obj, SettleError):
        return obj.as_dict()

    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}

    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, PurePath):
        return str(obj)

    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")

    return obj
