"""
The scope chain.

A DataEnvironment is one node in a tree of scopes. Each scope carries its
local data, a set of specials (transient context bindings such as loop
variables or handler params), the event handlers bound on it, and an event
boundary. Scopes hold their parent strongly and the owning HibikiState
weakly; callers keep the state alive for as long as its scopes are in use.
"""

import weakref
from typing import Any, Dict, List, Optional, Tuple

from hibiki.hibiki_datatypes import (
    EventBoundary, EventType, HandlerVal, InvalidCaret, RuntimeContext,
)
from hibiki.hibiki_paths import (
    LValue, PathLValue, RootKind, RootRef, parse_path, require_root,
)


def _to_handler_val(val) -> HandlerVal:
    if isinstance(val, HandlerVal):
        return val
    return HandlerVal(handler_str=str(val))


class DataEnvironment:
    def __init__(self, state, data: Any = None, *,
                 description: Optional[str] = None,
                 handlers: Optional[Dict[str, Any]] = None,
                 html_context: Optional[str] = None,
                 component_root: Optional[Dict[str, Any]] = None,
                 event_boundary: EventBoundary = EventBoundary.NONE):
        self.parent: Optional['DataEnvironment'] = None
        self._state_ref = weakref.ref(state)
        self.data = data
        self.specials: Dict[str, Any] = {}
        self.only_specials = False
        self.description = description
        self.handlers: Dict[str, HandlerVal] = {k: _to_handler_val(v) for k, v in (handlers or {}).items()}
        self.html_context = html_context
        self.component_root = component_root
        self.event_boundary = EventBoundary(event_boundary)

    @property
    def state(self):
        state = self._state_ref()
        if state is None:
            raise ReferenceError("the HibikiState owning this scope has been released")
        return state

    def __repr__(self) -> str:
        return f"<DataEnvironment {self.description or 'anonymous'}>"

    # --- Stacks -------------------------------------------------------

    def get_local_stack(self) -> List[Any]:
        """Local data of this scope and each ancestor, skipping special-only scopes."""
        stack = []
        env = self
        while env is not None:
            if not env.only_specials:
                stack.append(env.data)
            env = env.parent
        return stack

    def get_context_stack(self) -> List[Dict[str, Any]]:
        stack = []
        env = self
        while env is not None:
            stack.append(env.specials)
            env = env.parent
        return stack

    # --- Context ------------------------------------------------------

    def get_context_key(self, key: str) -> Any:
        env = self
        while env is not None:
            if key in env.specials:
                return env.specials[key]
            env = env.parent
        return None

    def get_squashed_context(self) -> Dict[str, Any]:
        """Merged specials along the chain, nearest binding winning."""
        merged: Dict[str, Any] = {}
        for specials in reversed(self.get_context_stack()):
            merged.update(specials)
        return merged

    def get_context_proxy(self) -> 'ContextProxy':
        return ContextProxy(self)

    # --- Roots --------------------------------------------------------

    def get_root_dataenv(self) -> 'DataEnvironment':
        env = self
        while env.parent is not None:
            env = env.parent
        return env

    def get_component_root(self) -> Optional[Dict[str, Any]]:
        env = self
        while env is not None:
            if env.component_root is not None:
                return env.component_root
            env = env.parent
        return None

    def get_html_context(self) -> str:
        """The '|'-joined html-context trail from the root down to this scope."""
        parts = []
        env = self
        while env is not None:
            if env.html_context is not None:
                parts.append(env.html_context)
            env = env.parent
        if not parts:
            return "none"
        return " | ".join(reversed(parts))

    def resolve_root(self, root_name: str, *, caret: Optional[int] = 0) -> Any:
        return self.resolve_root_ref(RootRef.from_name(root_name, caret))

    def resolve_root_ref(self, ref: RootRef) -> Any:
        if ref.caret < 0 or ref.caret > 1:
            raise InvalidCaret(ref.caret)
        return _ROOT_RESOLVERS[ref.kind](self, ref)

    # --- Handlers -----------------------------------------------------

    def get_handler_and_env(self, handler_name: str) -> Optional[Tuple[HandlerVal, 'DataEnvironment']]:
        """Finds the nearest scope binding handler_name.

        Handlers flagged with parent_env run in the binding scope's parent.
        """
        env = self
        while env is not None:
            hval = env.handlers.get(handler_name)
            if hval is not None:
                if hval.parent_env and env.parent is not None:
                    return hval, env.parent
                return hval, env
            env = env.parent
        return None

    def get_event_boundary(self, event_name: str) -> Optional['DataEnvironment']:
        """The nearest scope that stops an event of this name, if any.

        Hard boundaries stop every event. Soft boundaries stop only events
        they bind a handler for, or every event when the name is the wildcard.
        """
        env = self
        while env is not None:
            if env.event_boundary is EventBoundary.HARD:
                return env
            if env.event_boundary is EventBoundary.SOFT and (event_name == "*" or event_name in env.handlers):
                return env
            env = env.parent
        return None

    async def fire_event(self, event: EventType, rtctx: Optional[RuntimeContext] = None,
                         throw_on_error: bool = False) -> Any:
        from hibiki.hibiki_events import fire_event
        return await fire_event(self, event, rtctx, throw_on_error=throw_on_error)

    # --- Children -----------------------------------------------------

    def make_child_env(self, data: Any, specials: Optional[Dict[str, Any]] = None, **opts) -> 'DataEnvironment':
        """A child scope; it keeps this scope's description unless given its own."""
        if opts.get("description") is None:
            opts["description"] = self.description
        child = DataEnvironment(self.state, data, **opts)
        child.parent = self
        child.specials = dict(specials or {})
        return child

    def make_special_child_env(self, specials: Optional[Dict[str, Any]], **opts) -> 'DataEnvironment':
        """A child that shares this scope's data and only adds specials."""
        child = self.make_child_env(self.data, specials, **opts)
        child.only_specials = True
        return child

    # --- Paths --------------------------------------------------------

    def make_lvalue(self, path: str) -> LValue:
        return PathLValue(self, parse_path(path))

    def resolve_path(self, path: str) -> Any:
        return self.make_lvalue(path).get()

    def set_data_path(self, path: str, value: Any):
        self.make_lvalue(path).set(value)

    def eval_expr(self, source_text: Optional[str], label: Optional[str] = None) -> Any:
        return self.state.engine.evaluate(source_text, self, label)


class ContextProxy:
    """A live read/write view of the specials visible from one scope.

    Reads walk the chain; writes land in the bound scope only.
    """
    def __init__(self, env: DataEnvironment):
        self._env = env

    def get(self, key: str) -> Any:
        return self._env.get_context_key(key)

    def set(self, key: str, value: Any):
        self._env.specials[key] = value

    def delete(self, key: str):
        self._env.specials.pop(key, None)

    def has(self, key: str) -> bool:
        env = self._env
        while env is not None:
            if key in env.specials:
                return True
            env = env.parent
        return False

    def flatten(self) -> Dict[str, Any]:
        return self._env.get_squashed_context()

    def __repr__(self) -> str:
        return f"<ContextProxy {self._env.description or 'anonymous'}>"


# =================================================================
# Root Resolution
# =================================================================

def _hop(env: DataEnvironment, ref: RootRef) -> Optional[DataEnvironment]:
    """The scope `ref.caret` parents up, or None when that walks past the root."""
    for _ in range(ref.caret):
        if env is None:
            break
        env = env.parent
    return env


def _resolve_data_root(env: DataEnvironment, ref: RootRef) -> Any:
    return env.state.data_roots.get(ref.name)


def _resolve_named(env: DataEnvironment, ref: RootRef) -> Any:
    return require_root(ref.name, env.state.data_roots)


def _resolve_local(env: DataEnvironment, ref: RootRef) -> Any:
    stack = env.get_local_stack()
    if ref.caret >= len(stack):
        return None
    return stack[ref.caret]


def _resolve_context(env: DataEnvironment, ref: RootRef) -> Any:
    target = _hop(env, ref)
    if target is None:
        return None
    return ContextProxy(target)


def _resolve_current_context(env: DataEnvironment, ref: RootRef) -> Any:
    target = _hop(env, ref)
    if target is None:
        return None
    return target.specials


def _resolve_null(env: DataEnvironment, ref: RootRef) -> Any:
    return None


def _resolve_local_stack(env: DataEnvironment, ref: RootRef) -> Any:
    return env.get_local_stack()


def _resolve_context_stack(env: DataEnvironment, ref: RootRef) -> Any:
    return env.get_context_stack()


def _resolve_component(env: DataEnvironment, ref: RootRef) -> Any:
    return env.get_component_root()


_ROOT_RESOLVERS = {
    RootKind.GLOBAL: _resolve_data_root,
    RootKind.STATE: _resolve_data_root,
    RootKind.NAMED: _resolve_named,
    RootKind.LOCAL: _resolve_local,
    RootKind.CONTEXT: _resolve_context,
    RootKind.CURRENT_CONTEXT: _resolve_current_context,
    RootKind.NULL: _resolve_null,
    RootKind.LOCAL_STACK: _resolve_local_stack,
    RootKind.CONTEXT_STACK: _resolve_context_stack,
    RootKind.COMPONENT: _resolve_component,
}
