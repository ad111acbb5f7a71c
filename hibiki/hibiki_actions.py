"""
The action processing pipeline.

Handlers and modules return lists of action records. Each record is
normalised into an Action and applied in list order against the root scope.
Actions aimed at the `@rtn` selector build the batch's return value instead
of touching state. A malformed or failing action is logged and skipped
unless the configured severity for its kind is 'raise'.
"""

from collections.abc import Mapping
from typing import Any, List, Optional

from hibiki.hibiki_datatypes import Blob, MalformedAction, NoBlobToExtend, Node
from hibiki.hibiki_paths import LValue, RTN_SELECTOR
from hibiki.hibiki_values import deep_copy


KIND_ALIASES = {
    "setdata": "setdata",
    "assign": "setdata",
    "blob": "blob",
    "blobext": "blobext",
    "blob-extend": "blobext",
    "invalidate": "invalidate",
    "html": "html",
    "replace-document": "html",
}

SETOPS = frozenset({"set", "setunless", "append", "prepend", "merge", "delete"})

RTN_KINDS = frozenset({"setdata", "blob", "blobext"})


class Action:
    """One normalised mutation directive."""
    def __init__(self, kind: str, selector: Optional[str] = None, data: Any = None,
                 setop: str = "set", mimetype: Optional[str] = None,
                 blobbase64: Optional[str] = None):
        self.kind = kind
        self.selector = selector
        self.data = data
        self.setop = setop
        self.mimetype = mimetype
        self.blobbase64 = blobbase64

    @classmethod
    def from_record(cls, rr: Any) -> 'Action':
        if isinstance(rr, Action):
            return rr
        if not isinstance(rr, Mapping):
            raise MalformedAction(rr, "action must be a mapping")
        raw_kind = rr.get("type", rr.get("kind"))
        kind = KIND_ALIASES.get(str(raw_kind).lower()) if raw_kind is not None else None
        if kind is None:
            raise MalformedAction(rr, f"unknown action type {raw_kind!r}")

        selector = rr.get("selector", rr.get("path"))
        if selector is not None and not isinstance(selector, str):
            raise MalformedAction(rr, "selector must be a string")
        if kind in RTN_KINDS and not selector:
            raise MalformedAction(rr, "missing selector")

        setop = rr.get("setop") or "set"
        if kind == "setdata" and setop not in SETOPS:
            raise MalformedAction(rr, f"unknown setop {setop!r}")
        if kind == "setdata" and setop != "delete" and "data" not in rr:
            raise MalformedAction(rr, "missing data")
        if kind == "html" and rr.get("data") is None:
            raise MalformedAction(rr, "missing document data")
        if kind == "blob" and not rr.get("mimetype"):
            raise MalformedAction(rr, "missing mimetype")

        return cls(
            kind,
            selector=selector,
            data=rr.get("data"),
            setop=setop,
            mimetype=rr.get("mimetype"),
            blobbase64=rr.get("blobbase64"),
        )

    def __repr__(self) -> str:
        return f"Action<{self.kind} {self.selector!r}>"


def result_actions(result: Any) -> Optional[List[Any]]:
    """The action list carried by a module/handler result, if it carries one."""
    if not isinstance(result, Mapping):
        return None
    for field in ("actions", "hibikiactions"):
        actions = result.get(field)
        if isinstance(actions, list):
            return actions
    return None


# =================================================================
# Pipeline
# =================================================================

def process_actions(state, actions: Optional[List[Any]], capture_only: bool = False) -> Any:
    """Applies actions in order and returns the value built up at `@rtn`.

    The pass runs inside one registry batch, so invalidation refreshes fire
    after the last write in the list.
    """
    if actions is None:
        return None
    rtnval = None
    dataenv = state.root_dataenv()
    with state.registry.batch():
        for idx, rr in enumerate(actions):
            try:
                action = Action.from_record(rr)
                if action.selector == RTN_SELECTOR and action.kind in RTN_KINDS:
                    rtnval = capture_return(action, rtnval)
                    continue
                if capture_only:
                    continue
                apply_action(state, dataenv, action)
            except Exception as e:
                _handle_action_error(state, idx, rr, e)
    return rtnval


def capture_return(action: Action, rtnval: Any) -> Any:
    match action.kind:
        case "setdata":
            return action.data
        case "blob":
            return Blob.from_base64(action.mimetype, action.blobbase64)
        case "blobext":
            if not isinstance(rtnval, Blob):
                raise NoBlobToExtend(action.selector)
            rtnval.extend_base64(action.blobbase64)
            return rtnval
    return rtnval


def apply_action(state, dataenv, action: Action):
    match action.kind:
        case "invalidate":
            if action.selector:
                state.invalidate_regex(action.selector)
            else:
                state.invalidate_all()
        case "html":
            state.replace_document(action.data)
        case "blob":
            dataenv.make_lvalue(action.selector).set(Blob.from_base64(action.mimetype, action.blobbase64))
        case "blobext":
            lv = dataenv.make_lvalue(action.selector)
            blob = lv.get()
            if not isinstance(blob, Blob):
                raise NoBlobToExtend(action.selector)
            blob.extend_base64(action.blobbase64)
        case "setdata":
            apply_setop(dataenv.make_lvalue(action.selector), action.setop, deep_copy(action.data))


def apply_setop(lv: LValue, setop: str, value: Any):
    match setop:
        case "set":
            lv.set(value)
        case "setunless":
            if lv.get() is None:
                lv.set(value)
        case "append" | "prepend":
            cur = lv.get()
            if cur is None:
                lv.set([value])
            elif isinstance(cur, (list, tuple)):
                lv.set(list(cur) + [value] if setop == "append" else [value] + list(cur))
            else:
                raise TypeError(f"cannot {setop} to a value of type {type(cur).__name__} at {lv.as_string()}")
        case "merge":
            cur = lv.get()
            if cur is None:
                lv.set(value)
            elif isinstance(cur, Mapping) and isinstance(value, Mapping):
                merged = dict(cur)
                merged.update(value)
                lv.set(merged)
            else:
                raise TypeError(f"cannot merge into a value of type {type(cur).__name__} at {lv.as_string()}")
        case "delete":
            lv.delete()
        case _:
            raise ValueError(f"unknown setop {setop!r}")


def _handle_action_error(state, idx: int, rr: Any, err: Exception):
    raw_kind = rr.get("type", rr.get("kind")) if isinstance(rr, Mapping) else None
    kind = KIND_ALIASES.get(str(raw_kind).lower(), raw_kind) if raw_kind is not None else None
    if state.config.severity_for(kind) == "raise":
        raise err
    state.log(f"Skipping action #{idx} ({raw_kind}):", err)


def document_from_payload(data: Any, html_parser=None) -> Node:
    """Turns a replace-document payload into a node tree."""
    match data:
        case Node():
            return data
        case Mapping():
            return Node.from_dict(data)
        case str():
            if html_parser is None:
                raise ValueError("cannot replace document from markup, no html parser configured")
            return html_parser(data)
        case _:
            raise TypeError(f"invalid document payload of type {type(data).__name__}")
