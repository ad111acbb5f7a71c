"""
Defines the core data types for the Hibiki runtime.

This module provides the error taxonomy, the binary and node value types,
handler paths and requests, event records, and the runtime-context trail
that every handler invocation carries for error attribution.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, Literal


# =================================================================
# Errors
# =================================================================

class HibikiError(Exception):
    """Base class for all conditions raised by the Hibiki runtime."""
    pass


class InvalidRoot(HibikiError):
    def __init__(self, root: str):
        super().__init__(f"Invalid root path '{root}'")
        self.root = root


class InvalidCaret(HibikiError):
    def __init__(self, caret: Any):
        super().__init__(f"Invalid caret value {caret!r}, must be 0 or 1")
        self.caret = caret


class InvalidHandlerPath(HibikiError):
    def __init__(self, path: Any):
        super().__init__(f"Invalid handler path: {path!r}")
        self.path = path


class ModuleNotFound(HibikiError):
    def __init__(self, module: str, path: Optional[str] = None):
        super().__init__(f"Invalid handler, no module '{module}' found for path: {path}")
        self.module = module
        self.path = path


class InvalidMethod(HibikiError):
    def __init__(self, method: Any):
        super().__init__(f"Invalid method passed to /@fetch:[method]: {method!r}")
        self.method = method


class InvalidURL(HibikiError):
    def __init__(self, url: Any, reason: str = ""):
        msg = f"Invalid URL passed to fetch {url!r}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.url = url
        self.reason = reason


class BadFetchParams(HibikiError):
    def __init__(self, url: str, params: Any):
        super().__init__(f"Invalid params passed to /@fetch for url '{url}', params must be an object not {type(params).__name__}")
        self.url = url
        self.params = params


class BadStatus(HibikiError):
    def __init__(self, url: str, status: int):
        super().__init__(f"Bad status code response from '{url}': {status}")
        self.url = url
        self.status = status


class NoBlobToExtend(HibikiError):
    def __init__(self, selector: Optional[str]):
        super().__init__(f"Bad blobext:{selector}, no blob to extend")
        self.selector = selector


class MalformedAction(HibikiError):
    def __init__(self, action: Any, reason: str):
        super().__init__(f"Malformed action ({reason}): {action!r}")
        self.action = action
        self.reason = reason


class UnhandledEvent(HibikiError):
    def __init__(self, event: str):
        super().__init__(f"Unhandled event '{event}'")
        self.event = event


class HandlerExecutionError(HibikiError):
    """Wraps any failure raised while executing a handler block.

    The original exception is available as ``__cause__``; ``rtctx`` holds the
    runtime-context trail as it stood at the point of failure.
    """
    def __init__(self, message: str, rtctx: Optional['RuntimeContext'] = None):
        super().__init__(message)
        self.rtctx = rtctx


# =================================================================
# Enums
# =================================================================

class EventBoundary(Enum):
    NONE = "none"
    SOFT = "soft"
    HARD = "hard"


# =================================================================
# Value Types
# =================================================================

class Blob:
    """A binary value with a mimetype (images, downloads, non-JSON responses)."""
    def __init__(self, mimetype: Optional[str] = None, data: bytes = b""):
        self.mimetype = mimetype
        self.data = bytes(data)

    @classmethod
    def from_base64(cls, mimetype: Optional[str], b64: Optional[str]) -> 'Blob':
        blob = cls(mimetype)
        blob.extend_base64(b64)
        return blob

    def extend_base64(self, b64: Optional[str]):
        if b64:
            self.data += base64.b64decode(b64)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def copy(self) -> 'Blob':
        return Blob(self.mimetype, self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __eq__(self, other):
        if not isinstance(other, Blob):
            return NotImplemented
        return self.mimetype == other.mimetype and self.data == other.data

    def __repr__(self) -> str:
        return f"<Blob {self.mimetype} {len(self.data)} bytes>"


class Node:
    """A parsed markup node, as produced by the external HTML parser.

    Text children are nodes with tag ``#text`` and their content in ``text``.
    """
    def __init__(self, tag: str, attrs: Optional[Dict[str, Any]] = None,
                 children: Optional[List['Node']] = None,
                 style: Optional[Dict[str, Any]] = None, text: Optional[str] = None):
        self.tag = tag
        self.attrs: Dict[str, Any] = dict(attrs or {})
        self.children: List['Node'] = list(children or [])
        self.style = style
        self.text = text

    @classmethod
    def text_node(cls, text: str) -> 'Node':
        return cls("#text", text=text)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'Node':
        """Builds a node tree from the parser's plain-dict form (tag/attrs/list/style/text)."""
        if isinstance(d, Node):
            return d
        if "tag" not in d:
            raise ValueError(f"node dict requires a 'tag': {d!r}")
        kids = d.get("list", d.get("children")) or []
        return cls(
            d["tag"],
            attrs=d.get("attrs"),
            children=[cls.from_dict(k) for k in kids],
            style=d.get("style"),
            text=d.get("text"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"tag": self.tag}
        if self.attrs:
            out["attrs"] = dict(self.attrs)
        if self.children:
            out["list"] = [c.to_dict() for c in self.children]
        if self.style:
            out["style"] = dict(self.style)
        if self.text is not None:
            out["text"] = self.text
        return out

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return (self.tag == other.tag and self.attrs == other.attrs and self.children == other.children
                and self.style == other.style and self.text == other.text)

    def __repr__(self) -> str:
        if self.tag == "#text":
            return f"Node<#text {self.text!r}>"
        return f"Node<{self.tag} attrs={list(self.attrs.keys())} children={len(self.children)}>"


@dataclass
class HandlerVal:
    """An event or local handler bound on a scope."""
    handler_str: str
    node: Optional[Node] = None
    parent_env: bool = False


# =================================================================
# Handler Invocation
# =================================================================

@dataclass(frozen=True)
class HandlerPath:
    """A parsed handler path, `/@namespace/segment:fragment`."""
    namespace: str
    path: str = "/"
    fragment: Optional[str] = None

    def __str__(self) -> str:
        frag = f":{self.fragment}" if self.fragment else ""
        return f"/@{self.namespace}{self.path if self.path != '/' else ''}{frag}"


@dataclass
class HandlerRequest:
    """The record a module receives for one handler call."""
    path: HandlerPath
    data: List[Any] = field(default_factory=list)
    rt_context: Optional['RuntimeContext'] = None
    state: Any = None
    pure: bool = False


@dataclass
class EventType:
    """A UI-visible event fired up through the scope chain."""
    event: str
    datacontext: Dict[str, Any] = field(default_factory=dict)
    bubble: bool = False
    native_event: Any = None


# =================================================================
# Runtime Context and Error Reports
# =================================================================

class RuntimeContext:
    """The diagnostic call-trail used to attribute errors.

    Frames are pushed around every parse/execute step and popped on normal
    exit. A step that raises leaves its frame in place, so the trail at the
    point of failure survives into the error report.
    """
    def __init__(self, frames: Optional[List[str]] = None):
        self.frames: List[str] = list(frames or [])

    def push_context(self, frame: str):
        self.frames.append(frame)

    def pop_context(self) -> Optional[str]:
        if self.frames:
            return self.frames.pop()
        return None

    def copy(self) -> 'RuntimeContext':
        return RuntimeContext(self.frames)

    def as_string(self) -> str:
        return "\n".join(f"  {frame}" for frame in reversed(self.frames))

    def __len__(self) -> int:
        return len(self.frames)

    def __repr__(self) -> str:
        return f"<RuntimeContext frames={self.frames!r}>"


@dataclass
class ErrorReport:
    """A structured error delivered to the host's error callback."""
    message: str
    err: Optional[BaseException] = None
    rtctx: Optional[RuntimeContext] = None
    handler_path: Optional[str] = None
    block_str: Optional[str] = None

    def format(self) -> str:
        parts = [self.message]
        if self.err is not None:
            parts.append(f"{type(self.err).__name__}: {self.err}")
            cause = self.err.__cause__
            if cause is not None:
                parts.append(f"caused by {type(cause).__name__}: {cause}")
        if self.rtctx is not None and len(self.rtctx) > 0:
            parts.append("Runtime context:\n" + self.rtctx.as_string())
        if self.block_str:
            parts.append(f"Block: {self.block_str.strip()}")
        return "\n".join(parts)


@dataclass
class HandlerResult:
    """The settled outcome of a handler or module call."""
    status: Literal['success', 'error']
    value: Any = None
    error: Optional[ErrorReport] = None

    @property
    def ok(self) -> bool:
        return self.status == 'success'
