"""
HibikiState: the single context object that owns the data roots, the module
table, the invalidation registry and the current document, plus
HibikiExtState, the narrower handle passed to modules and host code.
"""

import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

from hibiki.hibiki_actions import document_from_payload, process_actions, result_actions
from hibiki.hibiki_blocks import BlockEngine, YamlBlockEngine
from hibiki.hibiki_config import HibikiConfig, load_config
from hibiki.hibiki_datatypes import (
    ErrorReport, HandlerRequest, HandlerResult, ModuleNotFound, Node, RuntimeContext,
)
from hibiki.hibiki_env import DataEnvironment
from hibiki.hibiki_modules import CallableModule, FetchModule, HandlerModule, LocalModule, parse_handler_path
from hibiki.hibiki_nodes import text_content
from hibiki.hibiki_paths import ROOT_ALIASES
from hibiki.hibiki_printer import Printer
from hibiki.hibiki_registry import InvalidationRegistry


class HibikiExtState:
    """The capability handle given to modules and to host code."""
    def __init__(self, state: 'HibikiState'):
        self.state = state

    def set_html(self, html: Any):
        self.state.set_html(document_from_payload(html, self.state.html_parser))

    def set_data(self, path: str, data: Any):
        self.state.root_dataenv().set_data_path(path, data)

    def get_data(self, path: str) -> Any:
        return self.state.root_dataenv().resolve_path(path)

    def run_actions(self, actions: List[Any]) -> Any:
        return self.state.run_actions(actions)

    def set_html_page(self, html_page: str):
        self.state.set_html_page(html_page)


class HibikiState:
    def __init__(self, config: Any = None, *,
                 engine: Optional[BlockEngine] = None,
                 html_parser: Optional[Callable[[str], Node]] = None):
        self.config: HibikiConfig = load_config(config)
        self.fe_client_id: Optional[str] = self.config.fe_client_id
        self.error_callback: Optional[Callable[[ErrorReport], Any]] = None
        self.engine: BlockEngine = engine or YamlBlockEngine()
        self.html_parser = html_parser
        self.html_obj: Optional[Node] = None
        self.html_page = "default"
        self.side_effects: List[Dict[str, Any]] = []
        self.initialized = False
        self._post_init_queue: List[Callable[[], Any]] = []
        self.data_roots: Dict[str, Any] = {"global": {}, "state": {}}
        self._readonly_roots: set = set()
        self.registry = InvalidationRegistry(log=self.log)
        self.modules: Dict[str, HandlerModule] = {}
        self.modules["fetch"] = FetchModule(self)
        self.modules["local"] = LocalModule(self)
        self._printer = Printer()

    # --- Configuration and roots ---------------------------------------

    def set_config(self, config: Any):
        self.config = load_config(config)
        if self.config.fe_client_id is not None:
            self.fe_client_id = self.config.fe_client_id

    def set_global_data(self, global_data: Any):
        self.data_roots["global"] = global_data

    def register_root(self, name: str, value: Any, readonly: bool = False):
        """Adds an extension root addressable as `$<name>`."""
        if name in ROOT_ALIASES and name not in ("global", "state"):
            raise ValueError(f"cannot register reserved root name '{name}'")
        self.data_roots[name] = value
        if readonly:
            self._readonly_roots.add(name)
        else:
            self._readonly_roots.discard(name)

    def is_readonly_root(self, name: str) -> bool:
        return name in self._readonly_roots

    def register_module(self, name: str, module: Any):
        if not isinstance(module, HandlerModule):
            module = CallableModule(module)
        self.modules[name] = module

    def get_ext_state(self) -> HibikiExtState:
        return HibikiExtState(self)

    def root_dataenv(self) -> DataEnvironment:
        return DataEnvironment(self, None, description="root")

    # --- Document -------------------------------------------------------

    def set_html(self, html_obj: Optional[Node]):
        self.html_obj = html_obj

    def set_html_page(self, html_page: str):
        self.html_page = html_page

    def replace_document(self, payload: Any):
        self.set_html(document_from_payload(payload, self.html_parser))

    def find_current_page(self) -> Optional[Node]:
        return self.find_page(self.html_page)

    def find_page(self, page_name: Optional[str] = None) -> Optional[Node]:
        """The named <page>, else a '*' page, else the whole document when it has no pages."""
        if not page_name:
            page_name = "default"
        if self.html_obj is None:
            return None
        star_page = None
        has_pages = False
        for node in self.html_obj.children:
            if node.tag != "page":
                continue
            has_pages = True
            name = node.attrs.get("name", node.attrs.get("appname", "default"))
            if name == page_name:
                return node
            if name == "*" and star_page is None:
                star_page = node
        if star_page is not None:
            return star_page
        if not has_pages:
            return self.html_obj
        return None

    def _find_top_level(self, tag: str, name: str) -> Optional[Node]:
        if self.html_obj is None:
            return None
        for node in self.html_obj.children:
            if node.tag == tag and node.attrs.get("name") == name:
                return node
        return None

    def find_component(self, name: str) -> Optional[Node]:
        return self._find_top_level("define-component", name)

    def find_local_handler(self, name: str) -> Optional[Node]:
        return self._find_top_level("define-handler", name)

    async def run_local_handler(self, node: Node, handler_data: List[Any], *,
                                rtctx: Optional[RuntimeContext] = None,
                                dataenv: Optional[DataEnvironment] = None,
                                name: Optional[str] = None) -> Any:
        name = name or node.attrs.get("name")
        rtctx = rtctx if rtctx is not None else RuntimeContext()
        env = dataenv if dataenv is not None else self.root_dataenv()
        ctx_env = env.make_special_child_env({"params": handler_data}, description=f"local handler {name}")
        rtctx.push_context(f"Running @local handler '{name}'")
        block = self.engine.parse_block(text_content(node))
        rv = await self.engine.execute_block(block, ctx_env, rtctx)
        rtctx.pop_context()
        return rv

    # --- Initialisation -------------------------------------------------

    def mark_initialized(self):
        self.initialized = True
        self.root_dataenv().set_data_path("$state.hibiki.initialized", True)
        while self._post_init_queue:
            fn = self._post_init_queue.pop(0)
            try:
                fn()
            except Exception as e:
                self.log("ERROR in post-init queue:", e)

    def queue_post_init(self, fn: Callable[[], Any]):
        if self.initialized:
            fn()
            return
        self._post_init_queue.append(fn)

    # --- Actions --------------------------------------------------------

    def process_actions(self, actions: Optional[List[Any]], capture_only: bool = False) -> Any:
        return process_actions(self, actions, capture_only)

    def run_actions(self, actions: Optional[List[Any]]) -> Any:
        return self.process_actions(actions, False)

    # --- Handler gateway ------------------------------------------------

    def call_handler_internal(self, handler_path: str, handler_data: Optional[List[Any]],
                              pure: bool = False, *, rtctx: Optional[RuntimeContext] = None) -> Awaitable[Any]:
        """Routes a handler path to its module.

        Path, module and argument validation happens before this returns; the
        returned awaitable yields the module's value, or the batch's return
        value when the module answered with actions.
        """
        hpath = parse_handler_path(handler_path)
        module = self.modules.get(hpath.namespace)
        if module is None:
            raise ModuleNotFound(hpath.namespace, handler_path)
        req = HandlerRequest(
            path=hpath,
            data=list(handler_data or []),
            rt_context=rtctx,
            state=self.get_ext_state(),
            pure=pure,
        )
        pending = module.call_handler(req)
        return self._settle_module_call(pending, pure)

    async def _settle_module_call(self, pending: Awaitable[Any], pure: bool) -> Any:
        data = await pending
        actions = result_actions(data)
        if actions is None:
            return data
        return self.process_actions(actions, pure)

    def call_handler(self, handler_path: str, handler_data: Optional[List[Any]] = None, *,
                     rtctx: Optional[RuntimeContext] = None) -> Awaitable[HandlerResult]:
        pending = self.call_handler_internal(handler_path, handler_data, False, rtctx=rtctx)
        return self._guard(pending, f"Error calling handler {handler_path}", handler_path, rtctx)

    def call_data(self, handler_path: str, handler_data: Optional[List[Any]] = None, *,
                  rtctx: Optional[RuntimeContext] = None) -> Awaitable[HandlerResult]:
        pending = self.call_handler_internal(handler_path, handler_data, True, rtctx=rtctx)
        return self._guard(pending, f"Error calling data handler {handler_path}", handler_path, rtctx)

    async def _guard(self, pending: Awaitable[Any], message: str, handler_path: str,
                     rtctx: Optional[RuntimeContext]) -> HandlerResult:
        try:
            value = await pending
        except Exception as e:
            report = ErrorReport(message=message, err=e, rtctx=rtctx, handler_path=handler_path)
            self.report_error_obj(report)
            return HandlerResult(status='error', error=report)
        return HandlerResult(status='success', value=value)

    # --- Error reporting and diagnostics --------------------------------

    def report_error(self, message: str, rtctx: Optional[RuntimeContext] = None):
        self.report_error_obj(ErrorReport(message=message, rtctx=rtctx))

    def report_error_obj(self, report: ErrorReport):
        if self.error_callback is None:
            self.log("Hibiki Error |", report)
            return
        try:
            self.error_callback(report)
        except Exception as e:
            self.log("Hibiki Error |", report)
            self.log("ERROR in error callback:", e)

    def log(self, *parts: Any):
        msg = " ".join(p if isinstance(p, str) else self._printer.pformat(p) for p in parts)
        self.side_effects.append({'topics': ['stderr'], 'message': msg})
        self._dbg(msg)

    def _dbg(self, *parts: Any):
        if self.config.debug_enabled:
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except OSError:
                pass

    # --- Invalidation ---------------------------------------------------

    def register_data_node(self, uuid: str, query: str, refresh: Callable[[], Any]):
        self.registry.register(uuid, query, refresh)

    def unregister_data_node(self, uuid: str):
        self.registry.unregister(uuid)

    def invalidate(self, query: str) -> int:
        return self.registry.invalidate(query)

    def invalidate_regex(self, pattern: str) -> int:
        return self.registry.invalidate_by_pattern(pattern)

    def invalidate_all(self) -> int:
        return self.registry.invalidate_all()
