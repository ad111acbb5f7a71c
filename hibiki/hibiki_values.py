"""
Value kinds and the copy/equality semantics of the state tree.

Plain data (mappings, sequences, blobs) is copied on write. References,
scopes, context proxies and nodes are shared: copying a structure that holds
an LValue yields a structure holding the same LValue.
"""

import collections.abc
from enum import Enum
from typing import Any, Optional, Set

from hibiki.hibiki_datatypes import Blob, ErrorReport, Node
from hibiki.hibiki_env import ContextProxy, DataEnvironment
from hibiki.hibiki_paths import LValue


class ValueKind(Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    BLOB = "blob"
    REFERENCE = "reference"
    ERROR = "error"
    NODE = "node"
    SCOPE = "scope"
    OTHER = "other"


def value_kind(value: Any) -> ValueKind:
    match value:
        case None:
            return ValueKind.NULL
        case bool():
            return ValueKind.BOOL
        case int() | float():
            return ValueKind.NUMBER
        case str():
            return ValueKind.STRING
        case LValue():
            return ValueKind.REFERENCE
        case Blob():
            return ValueKind.BLOB
        case Node():
            return ValueKind.NODE
        case BaseException() | ErrorReport():
            return ValueKind.ERROR
        case DataEnvironment() | ContextProxy():
            return ValueKind.SCOPE
        case collections.abc.Mapping():
            return ValueKind.MAPPING
        case list() | tuple():
            return ValueKind.SEQUENCE
        case _:
            return ValueKind.OTHER


def deep_copy(value: Any, _active: Optional[Set[int]] = None) -> Any:
    """Copies plain data, sharing references. Raises ValueError on a cycle."""
    kind = value_kind(value)
    match kind:
        case ValueKind.MAPPING | ValueKind.SEQUENCE:
            active = _active if _active is not None else set()
            vid = id(value)
            if vid in active:
                raise ValueError("cannot copy a cyclic value")
            active.add(vid)
            try:
                if kind is ValueKind.MAPPING:
                    return {k: deep_copy(v, active) for k, v in value.items()}
                items = [deep_copy(v, active) for v in value]
                return tuple(items) if isinstance(value, tuple) else items
            finally:
                active.discard(vid)
        case ValueKind.BLOB:
            return value.copy()
        case _:
            return value


def has_cycle(value: Any, _active: Optional[Set[int]] = None) -> bool:
    kind = value_kind(value)
    if kind not in (ValueKind.MAPPING, ValueKind.SEQUENCE):
        return False
    active = _active if _active is not None else set()
    vid = id(value)
    if vid in active:
        return True
    active.add(vid)
    try:
        children = value.values() if kind is ValueKind.MAPPING else value
        return any(has_cycle(v, active) for v in children)
    finally:
        active.discard(vid)


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality over the state tree.

    Booleans never equal numbers. References are equal when they are the
    same handle or point at the same location.
    """
    ka, kb = value_kind(a), value_kind(b)
    if ka is not kb:
        return False
    match ka:
        case ValueKind.NULL:
            return True
        case ValueKind.BOOL | ValueKind.NUMBER | ValueKind.STRING:
            return a == b
        case ValueKind.REFERENCE:
            return a.same_location(b)
        case ValueKind.BLOB:
            return a.mimetype == b.mimetype and a.data == b.data
        case ValueKind.MAPPING:
            if a is b:
                return True
            if set(a.keys()) != set(b.keys()):
                return False
            return all(deep_equal(a[k], b[k]) for k in a.keys())
        case ValueKind.SEQUENCE:
            if a is b:
                return True
            return len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b))
        case _:
            return a is b or a == b


def to_plain(value: Any, _active: Optional[Set[int]] = None) -> Any:
    """Converts a runtime value into JSON/YAML-safe builtins.

    References are read through, context proxies flattened, blobs become
    {mimetype, data(base64)} and nodes their dict form. Scopes have no plain
    form and become None.
    """
    match value_kind(value):
        case ValueKind.REFERENCE:
            return to_plain(value.get(), _active)
        case ValueKind.BLOB:
            return {"mimetype": value.mimetype, "data": value.to_base64()}
        case ValueKind.NODE:
            return value.to_dict()
        case ValueKind.ERROR:
            if isinstance(value, ErrorReport):
                return value.format()
            return f"{type(value).__name__}: {value}"
        case ValueKind.SCOPE:
            if isinstance(value, ContextProxy):
                return to_plain(value.flatten(), _active)
            return None
        case ValueKind.MAPPING | ValueKind.SEQUENCE:
            active = _active if _active is not None else set()
            vid = id(value)
            if vid in active:
                raise ValueError("cannot convert a cyclic value")
            active.add(vid)
            try:
                if isinstance(value, collections.abc.Mapping):
                    return {str(k): to_plain(v, active) for k, v in value.items()}
                return [to_plain(v, active) for v in value]
            finally:
                active.discard(vid)
        case _:
            return value
