"""
Path parsing and the LValue family.

A path names a location in the state tree: a root (`$state`, `$local`,
`@name`, ...) followed by accessors (`.field`, `[0]`, `["key"]`). An LValue
is a live, settable handle on such a location; copying a value that
contains an LValue copies the handle, never the location it points at.
"""

import json
import re
import types
from abc import ABC, abstractmethod
from collections.abc import Mapping, MutableMapping
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from hibiki.hibiki_datatypes import InvalidRoot


RTN_SELECTOR = "@rtn"

Segment = Union[str, int]


class RootKind(Enum):
    GLOBAL = "global"
    STATE = "state"
    LOCAL = "local"
    NULL = "null"
    CONTEXT = "context"
    CURRENT_CONTEXT = "currentcontext"
    LOCAL_STACK = "localstack"
    CONTEXT_STACK = "contextstack"
    COMPONENT = "component"
    NAMED = "named"


ROOT_ALIASES = {
    "": RootKind.GLOBAL,
    "data": RootKind.GLOBAL,
    "global": RootKind.GLOBAL,
    "state": RootKind.STATE,
    "local": RootKind.LOCAL,
    "null": RootKind.NULL,
    "context": RootKind.CONTEXT,
    "currentcontext": RootKind.CURRENT_CONTEXT,
    "localstack": RootKind.LOCAL_STACK,
    "contextstack": RootKind.CONTEXT_STACK,
    "c": RootKind.COMPONENT,
    "component": RootKind.COMPONENT,
}

READONLY_KINDS = frozenset({RootKind.NULL, RootKind.LOCAL_STACK, RootKind.CONTEXT_STACK})

# Containers a write must pass over silently.
READONLY_CONTAINERS = (tuple, types.MappingProxyType, frozenset)


class RootRef:
    """A root selector plus its caret (parent-hop) count."""
    def __init__(self, kind: RootKind, name: Optional[str] = None, caret: int = 0):
        self.kind = kind
        self.name = name if name is not None else kind.value
        self.caret = caret

    @classmethod
    def from_name(cls, name: Optional[str], caret: Optional[int] = 0) -> 'RootRef':
        name = name or ""
        kind = ROOT_ALIASES.get(name)
        if kind is None:
            return cls(RootKind.NAMED, name, caret or 0)
        if kind is RootKind.GLOBAL:
            return cls(kind, "global", caret or 0)
        return cls(kind, kind.value, caret or 0)

    @property
    def data_root_name(self) -> Optional[str]:
        """The name under which this root lives in the state's data roots, if any."""
        if self.kind in (RootKind.GLOBAL, RootKind.STATE, RootKind.NAMED):
            return self.name
        return None

    def to_str(self) -> str:
        return "$" + ("^" * self.caret) + self.name

    def __eq__(self, other):
        if not isinstance(other, RootRef):
            return NotImplemented
        return (self.kind, self.name, self.caret) == (other.kind, other.name, other.caret)

    def __hash__(self):
        return hash((self.kind, self.name, self.caret))

    def __repr__(self) -> str:
        return f"RootRef<{self.to_str()}>"


class PathExpr:
    """A parsed path: one root and a fixed tuple of segments."""
    def __init__(self, root: RootRef, segments: Tuple[Segment, ...] = ()):
        self.root = root
        self.segments = tuple(segments)

    def to_str(self) -> str:
        out = self.root.to_str()
        for seg in self.segments:
            if isinstance(seg, int):
                out += f"[{seg}]"
            elif _PLAIN_KEY_RE.fullmatch(seg):
                out += f".{seg}"
            else:
                out += f"[{json.dumps(seg)}]"
        return out

    def __eq__(self, other):
        if not isinstance(other, PathExpr):
            return NotImplemented
        return self.root == other.root and self.segments == other.segments

    def __hash__(self):
        return hash((self.root, self.segments))

    def __repr__(self) -> str:
        return f"PathExpr<{self.to_str()}>"


# =================================================================
# Path Parsing
# =================================================================

_ROOT_RE = re.compile(r"\$(\^*)([a-zA-Z_][a-zA-Z0-9_]*)?")
_CONTEXT_RE = re.compile(r"@([a-zA-Z_][a-zA-Z0-9_-]*)")
_PLAIN_KEY_RE = re.compile(r"[a-zA-Z0-9_][a-zA-Z0-9_-]*")
_INDEX_RE = re.compile(r"\[\s*(-?\d+)\s*\]")
_DQ_KEY_RE = re.compile(r'\[\s*"((?:[^"\\]|\\.)*)"\s*\]')
_SQ_KEY_RE = re.compile(r"\[\s*'((?:[^'\\]|\\.)*)'\s*\]")


def parse_path(text: str) -> PathExpr:
    """Parses a path string into a PathExpr.

    Raises ValueError for anything that is not a well-formed path.
    """
    if not isinstance(text, str):
        raise ValueError(f"path must be a string, got {type(text).__name__}")
    src = text.strip()
    if not src:
        raise ValueError("empty path")

    segments: List[Segment] = []
    if src[0] == "@":
        m = _CONTEXT_RE.match(src)
        if m is None:
            raise ValueError(f"Invalid context path {text!r}")
        root = RootRef(RootKind.CONTEXT)
        segments.append(m.group(1))
        pos = m.end()
    elif src[0] == "$":
        m = _ROOT_RE.match(src)
        root = RootRef.from_name(m.group(2), len(m.group(1)))
        pos = m.end()
    else:
        raise ValueError(f"Invalid path {text!r}, paths start with '$' or '@'")

    while pos < len(src):
        ch = src[pos]
        if ch == ".":
            m = _PLAIN_KEY_RE.match(src, pos + 1)
            if m is None:
                raise ValueError(f"Invalid path {text!r}, expected a field name at position {pos + 1}")
            segments.append(m.group(0))
            pos = m.end()
            continue
        if ch == "[":
            m = _INDEX_RE.match(src, pos)
            if m is not None:
                segments.append(int(m.group(1)))
                pos = m.end()
                continue
            m = _DQ_KEY_RE.match(src, pos)
            if m is not None:
                segments.append(json.loads('"' + m.group(1) + '"'))
                pos = m.end()
                continue
            m = _SQ_KEY_RE.match(src, pos)
            if m is not None:
                segments.append(m.group(1).replace("\\'", "'").replace("\\\\", "\\"))
                pos = m.end()
                continue
        raise ValueError(f"Invalid path {text!r} at position {pos}")
    return PathExpr(root, tuple(segments))


# =================================================================
# Segment access
# =================================================================

def get_segment(container: Any, key: Segment) -> Any:
    """Reads one accessor step; missing or unreadable locations yield None."""
    from hibiki.hibiki_env import ContextProxy
    if container is None:
        return None
    if isinstance(container, LValue):
        return get_segment(container.get(), key)
    if isinstance(container, ContextProxy):
        return container.get(str(key))
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple)):
        if isinstance(key, int) and -len(container) <= key < len(container):
            return container[key]
        return None
    return None


def _deref(value: Any) -> Any:
    while isinstance(value, LValue):
        value = value.get()
    return value


def _put_segment(container: Any, key: Segment, value: Any):
    from hibiki.hibiki_env import ContextProxy
    match container:
        case LValue():
            target = _deref(container)
            if target is None:
                container.set(_empty_container_for(key))
                target = _deref(container)
                if target is None:
                    return
            _put_segment(target, key, value)
        case ContextProxy():
            existing = container.get(str(key))
            if isinstance(existing, LValue):
                existing.set(value)
            else:
                container.set(str(key), value)
        case tuple() | types.MappingProxyType() | frozenset():
            return
        case MutableMapping():
            existing = container.get(key)
            if isinstance(existing, LValue):
                existing.set(value)
            else:
                container[key] = value
        case list():
            if not isinstance(key, int):
                raise TypeError(f"cannot set key {key!r} on a list")
            if key < 0:
                if key < -len(container):
                    return
                key += len(container)
            if key < len(container):
                if isinstance(container[key], LValue):
                    container[key].set(value)
                else:
                    container[key] = value
                return
            container.extend([None] * (key - len(container)))
            container.append(value)
        case _:
            raise TypeError(f"cannot set {key!r} on a value of type {type(container).__name__}")


def _delete_segment(container: Any, key: Segment):
    from hibiki.hibiki_env import ContextProxy
    match container:
        case LValue():
            _delete_segment(_deref(container), key)
        case ContextProxy():
            container.delete(str(key))
        case tuple() | types.MappingProxyType() | frozenset():
            return
        case MutableMapping():
            container.pop(key, None)
        case list():
            if isinstance(key, int) and -len(container) <= key < len(container):
                del container[key]
        case _:
            return


def _empty_container_for(next_key: Segment):
    return [] if isinstance(next_key, int) else {}


# =================================================================
# LValues
# =================================================================

class LValue(ABC):
    """A first-class, settable reference to a location in the state tree."""

    @abstractmethod
    def get(self) -> Any:
        ...

    @abstractmethod
    def set(self, value: Any):
        ...

    def delete(self):
        """Removes the referenced location. A no-op where that is not possible."""
        return None

    def subscript(self, key: Segment) -> 'LValue':
        return SubLValue(self, key)

    @abstractmethod
    def as_string(self) -> str:
        ...

    def same_location(self, other: 'LValue') -> bool:
        return self is other

    def __repr__(self) -> str:
        return f"LValue<{self.as_string()}>"


class PathLValue(LValue):
    """An LValue bound to a scope and a parsed path."""
    def __init__(self, env, path: Union[PathExpr, str], readonly: bool = False):
        self.env = env
        self.path = path if isinstance(path, PathExpr) else parse_path(path)
        self.readonly = readonly

    def _is_readonly(self) -> bool:
        if self.readonly or self.path.root.kind in READONLY_KINDS:
            return True
        name = self.path.root.data_root_name
        return name is not None and self.env.state.is_readonly_root(name)

    def get(self) -> Any:
        cur = self.env.resolve_root_ref(self.path.root)
        for seg in self.path.segments:
            cur = get_segment(cur, seg)
            if cur is None:
                return None
        return _deref(cur)

    def set(self, value: Any):
        if self._is_readonly():
            self.env.state._dbg("set on read-only location ignored:", self.as_string())
            return
        root = self.path.root
        segments = self.path.segments
        if not segments:
            self._set_root(value)
            return
        container = self.env.resolve_root_ref(root)
        if container is None:
            if root.data_root_name is None:
                raise TypeError(f"cannot set into null root {root.to_str()}")
            container = _empty_container_for(segments[0])
            self.env.state.data_roots[root.data_root_name] = container
        for idx, seg in enumerate(segments[:-1]):
            nxt = get_segment(container, seg)
            if nxt is None:
                if isinstance(_deref(container), READONLY_CONTAINERS):
                    return
                nxt = _empty_container_for(segments[idx + 1])
                _put_segment(container, seg, nxt)
            container = nxt
        _put_segment(container, segments[-1], value)

    def _set_root(self, value: Any):
        name = self.path.root.data_root_name
        if name is None:
            raise TypeError(f"cannot rebind root {self.path.root.to_str()}")
        existing = self.env.state.data_roots.get(name)
        if isinstance(existing, LValue):
            existing.set(value)
            return
        self.env.state.data_roots[name] = value

    def delete(self):
        if self._is_readonly() or not self.path.segments:
            return
        container = self.env.resolve_root_ref(self.path.root)
        for seg in self.path.segments[:-1]:
            container = get_segment(container, seg)
            if container is None:
                return
        _delete_segment(container, self.path.segments[-1])

    def as_string(self) -> str:
        return self.path.to_str()

    def same_location(self, other: LValue) -> bool:
        if self is other:
            return True
        if not isinstance(other, PathLValue) or self.path != other.path:
            return False
        if self.path.root.data_root_name is not None:
            return self.env.state is other.env.state
        return self.env is other.env


class SubLValue(LValue):
    """An LValue one accessor step below another LValue."""
    def __init__(self, parent: LValue, key: Segment):
        self.parent = parent
        self.key = key

    def get(self) -> Any:
        return _deref(get_segment(self.parent.get(), self.key))

    def set(self, value: Any):
        container = self.parent.get()
        if container is None:
            container = _empty_container_for(self.key)
            self.parent.set(container)
            # read-only parents ignore the write
            container = self.parent.get()
            if container is None:
                return
        _put_segment(container, self.key, value)

    def delete(self):
        container = self.parent.get()
        if container is not None:
            _delete_segment(container, self.key)

    def as_string(self) -> str:
        if isinstance(self.key, int):
            return f"{self.parent.as_string()}[{self.key}]"
        return f"{self.parent.as_string()}.{self.key}"

    def same_location(self, other: LValue) -> bool:
        if self is other:
            return True
        return (isinstance(other, SubLValue) and self.key == other.key
                and self.parent.same_location(other.parent))


class ReadOnlyLValue(LValue):
    """Wraps an LValue so that writes through it are ignored."""
    def __init__(self, inner: LValue):
        self.inner = inner

    def get(self) -> Any:
        return self.inner.get()

    def set(self, value: Any):
        return None

    def subscript(self, key: Segment) -> LValue:
        return ReadOnlyLValue(self.inner.subscript(key))

    def as_string(self) -> str:
        return f"readonly({self.inner.as_string()})"

    def same_location(self, other: LValue) -> bool:
        if isinstance(other, ReadOnlyLValue):
            other = other.inner
        return self.inner.same_location(other)


class ValueLValue(LValue):
    """An anonymous, self-contained location holding a single value."""
    def __init__(self, value: Any = None, name: str = "value"):
        self.value = value
        self.name = name

    def get(self) -> Any:
        return self.value

    def set(self, value: Any):
        self.value = value

    def as_string(self) -> str:
        return f"<{self.name}>"


def require_root(name: str, roots: Mapping) -> Any:
    """Looks up a registered data root, raising InvalidRoot when absent."""
    if name not in roots:
        raise InvalidRoot(name)
    return roots[name]
