"""
Helpers over the parsed node tree: handler extraction, attribute
resolution, and iteration over bound values.
"""

import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from hibiki.hibiki_datatypes import Blob, HandlerVal, Node
from hibiki.hibiki_env import ContextProxy, DataEnvironment
from hibiki.hibiki_paths import LValue


EVENT_HANDLER_PREFIX = "/@event/"
LOCAL_HANDLER_PREFIX = "/@local/"

_ARG_DECL_RE = re.compile(r"\*?[a-z][a-z0-9_]*")


def text_content(node: Optional[Node]) -> str:
    if node is None:
        return ""
    if node.tag == "#text":
        return node.text or ""
    return "".join(text_content(child) for child in node.children)


def filter_sub_nodes(node: Optional[Node], fn: Callable[[Node], bool]) -> List[Node]:
    if node is None:
        return []
    return [child for child in node.children if fn(child)]


def sub_nodes_by_tag(node: Optional[Node], tag: str) -> List[Node]:
    return filter_sub_nodes(node, lambda child: child.tag == tag)


def first_sub_node_by_tag(node: Optional[Node], tag: str) -> Optional[Node]:
    for child in sub_nodes_by_tag(node, tag):
        return child
    return None


def make_handlers(node: Node, define_event_handler_allowed: bool = False,
                  define_local_handler_allowed: bool = False) -> Dict[str, HandlerVal]:
    """Collects the handlers a node binds.

    `<event>.handler` attributes bind event handlers by event name;
    `<define-handler name="/@event/<event>">` children do the same when
    allowed, and `/@local/...` definitions are kept under their full name.
    """
    handlers: Dict[str, HandlerVal] = {}
    for key, val in node.attrs.items():
        if key == "handler" or key.endswith(".handler"):
            event_name = key[:-len(".handler")] if key != "handler" else key
            handlers[event_name] = HandlerVal(handler_str=str(val), node=node)
    if not (define_event_handler_allowed or define_local_handler_allowed):
        return handlers
    for sub in sub_nodes_by_tag(node, "define-handler"):
        hname = sub.attrs.get("name")
        if not isinstance(hname, str):
            continue
        if define_event_handler_allowed and hname.startswith(EVENT_HANDLER_PREFIX):
            handlers[hname[len(EVENT_HANDLER_PREFIX):]] = HandlerVal(handler_str=text_content(sub), node=sub)
        if define_local_handler_allowed and hname.startswith(LOCAL_HANDLER_PREFIX):
            handlers[hname] = HandlerVal(handler_str=text_content(sub), node=sub)
    return handlers


def parse_args_decl(decl: Optional[str]) -> Dict[str, bool]:
    """Parses an argument declaration like "*a, b" into {name: writeable}."""
    rtn: Dict[str, bool] = {}
    if decl is None or decl.strip() == "":
        return rtn
    for field in decl.split(","):
        field = field.strip()
        if field == "":
            continue
        if not _ARG_DECL_RE.fullmatch(field):
            continue
        writeable = field.startswith("*")
        rtn[field.lstrip("*")] = writeable
    return rtn


def resolve_attr_val(key: str, val: Any, env: DataEnvironment, raw: bool = False) -> Any:
    """Resolves one attribute value.

    Values starting with '*' are expressions evaluated in env; LValues are
    read through. Unless raw is set, the result is coerced to a string
    (None/False/"" become None, True becomes "1") except for blobs.
    """
    if val is None or val == "":
        return None
    if isinstance(val, str) and val.startswith("*"):
        val = env.eval_expr(val[1:], label=f"attribute '{key}'")
    if isinstance(val, LValue):
        val = val.get()
    if raw:
        return val
    if val is None or val is False or val == "":
        return None
    if val is True:
        return "1"
    if isinstance(val, Blob):
        return val
    return str(val)


def get_attribute(node: Node, name: str, env: DataEnvironment, raw: bool = False) -> Any:
    if name not in node.attrs:
        return None
    return resolve_attr_val(name, node.attrs[name], env, raw)


def get_attributes(node: Node, env: DataEnvironment, raw: bool = False) -> Dict[str, Any]:
    rtn = {}
    for key, val in node.attrs.items():
        if key == "handler" or key.endswith(".handler"):
            continue
        resolved = resolve_attr_val(key, val, env, raw)
        if resolved is not None:
            rtn[key] = resolved
    return rtn


def make_iterator(bind_val: Any) -> Tuple[Iterable[Any], bool]:
    """Returns (items, is_map) for iterating a bound value."""
    match bind_val:
        case None:
            return [], False
        case Blob() | Node():
            return [bind_val], False
        case DataEnvironment() | LValue() | ContextProxy():
            return [], False
        case Mapping():
            return list(bind_val.items()), True
        case list() | tuple():
            return bind_val, False
        case _:
            return [bind_val], False


def get_kv(item: Any, is_map: bool) -> Tuple[Any, Any]:
    if is_map:
        key, val = item
        return key, val
    return None, item
