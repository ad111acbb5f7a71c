"""
Handler paths and the modules that service them.

A handler path has the form `/@namespace/segment/segment:fragment`. The
namespace selects a module from the state's module table; the module gets a
HandlerRequest and returns an awaitable result. Modules validate their
arguments synchronously, so a bad method or URL raises straight to the
caller instead of surfacing later as a failed call.
"""

import inspect
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from hibiki import hibiki_http
from hibiki.hibiki_datatypes import (
    BadFetchParams, BadStatus, Blob, HandlerPath, HandlerRequest, HibikiError,
    InvalidHandlerPath, InvalidMethod, InvalidURL,
)
from hibiki.hibiki_serialize import deserialize, is_json_content_type, serialize
from hibiki.hibiki_values import to_plain


_HANDLER_PATH_RE = re.compile(
    r"^(?:/@([a-zA-Z_][a-zA-Z0-9_]*))?(/[a-zA-Z0-9._/-]*)?(?:[:](@?[a-zA-Z][a-zA-Z0-9_-]*))?$"
)

DEFAULT_NAMESPACE = "default"

VALID_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})

# Methods whose params go into the query string rather than a JSON body.
QUERY_METHODS = frozenset({"GET", "DELETE", "HEAD", "OPTIONS"})

FE_CLIENT_ID_HEADER = "X-Hibiki-FeClientId"


def parse_handler_path(path: Any) -> HandlerPath:
    if not isinstance(path, str) or path == "" or path[0] != "/":
        raise InvalidHandlerPath(path)
    m = _HANDLER_PATH_RE.match(path)
    if m is None:
        raise InvalidHandlerPath(path)
    return HandlerPath(
        namespace=m.group(1) or DEFAULT_NAMESPACE,
        path=m.group(2) or "/",
        fragment=m.group(3),
    )


class HandlerModule(ABC):
    """A pluggable backend servicing one handler namespace."""

    @abstractmethod
    def call_handler(self, req: HandlerRequest) -> Awaitable[Any]:
        ...


class CallableModule(HandlerModule):
    """Adapts a plain function (sync or async) taking a HandlerRequest."""
    def __init__(self, fn: Callable[[HandlerRequest], Any]):
        self.fn = fn

    async def call_handler(self, req: HandlerRequest) -> Any:
        rv = self.fn(req)
        if inspect.isawaitable(rv):
            rv = await rv
        return rv


class LocalModule(HandlerModule):
    """Runs `define-handler` blocks declared in the current document (`/@local/<name>`)."""
    def __init__(self, state):
        self.state = state

    def call_handler(self, req: HandlerRequest) -> Awaitable[Any]:
        name = f"/@local{req.path.path}"
        node = self.state.find_local_handler(name)
        if node is None:
            raise HibikiError(f"No local handler found for '{name}'")
        return self.state.run_local_handler(node, req.data, rtctx=req.rt_context, name=name)


# =================================================================
# Fetch
# =================================================================

def encode_query_params(params: Mapping) -> Dict[str, str]:
    """Strings and numbers go as-is, None and callables are dropped, the rest is JSON."""
    out: Dict[str, str] = {}
    for key, val in params.items():
        if val is None or callable(val):
            continue
        if isinstance(val, str):
            out[str(key)] = val
        elif isinstance(val, (int, float)) and not isinstance(val, bool):
            out[str(key)] = str(val)
        else:
            out[str(key)] = json.dumps(to_plain(val))
    return out


def validate_url(url: Any) -> str:
    if not isinstance(url, str) or not url:
        raise InvalidURL(url, "first argument must be the URL to fetch")
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise InvalidURL(url, str(e)) from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidURL(url, "an absolute http(s) URL is required")
    return url


class FetchModule(HandlerModule):
    """Services `/@fetch:<METHOD>` calls with args `[url, params, init]`.

    `csrf_hook()` may return extra headers to send. `fetch_init_hook(url, init)`
    may adjust the outgoing init record (headers, timeout) in place.
    """
    def __init__(self, state):
        self.state = state
        self.csrf_hook: Optional[Callable[[], Optional[Dict[str, str]]]] = None
        self.fetch_init_hook: Optional[Callable[[str, Dict[str, Any]], None]] = None

    def fetch_config(self, url: str, init: Dict[str, Any]) -> Dict[str, Any]:
        headers = init["headers"]
        if self.state.fe_client_id:
            headers[FE_CLIENT_ID_HEADER] = self.state.fe_client_id
        if self.csrf_hook is not None:
            headers.update(self.csrf_hook() or {})
        if self.fetch_init_hook is not None:
            self.fetch_init_hook(url, init)
        return init

    def call_handler(self, req: HandlerRequest) -> Awaitable[Any]:
        method = req.path.fragment
        if not isinstance(method, str) or method.upper() not in VALID_METHODS:
            raise InvalidMethod(method)
        method = method.upper()
        args = list(req.data or [])
        url = validate_url(args[0] if args else None)
        params = args[1] if len(args) > 1 else None
        init = args[2] if len(args) > 2 else None
        if params is not None and not isinstance(params, Mapping):
            raise BadFetchParams(url, params)
        if init is not None and not isinstance(init, Mapping):
            raise BadFetchParams(url, init)

        init = dict(init or {})
        init["headers"] = dict(init.get("headers") or {})
        init["method"] = method
        query: Dict[str, str] = {}
        body = None
        if params is not None:
            if method in QUERY_METHODS:
                query = encode_query_params(params)
            else:
                init["headers"]["Content-Type"] = "application/json"
                body = serialize(params, fmt="json", pretty=False)
        init = self.fetch_config(url, init)
        return self._do_fetch(url, method, query, body, init)

    async def _do_fetch(self, url: str, method: str, query: Dict[str, str],
                        body: Optional[str], init: Dict[str, Any]) -> Any:
        cfg = self.state.config
        status, content, headers = await hibiki_http.http_request(
            method, url,
            config={
                "timeout": init.get("timeout", cfg.fetch_timeout),
                "retries": cfg.fetch_retries,
                "backoff": cfg.fetch_backoff,
                "headers": init["headers"],
                "params": query,
            },
            data=body,
        )
        if not 200 <= status < 300:
            raise BadStatus(url, status)
        if not content:
            return None
        ctype = hibiki_http.content_type_of(headers)
        if is_json_content_type(ctype):
            return deserialize(content, content_type=ctype, fmt="json")
        if ctype is None:
            raise HibikiError(f"Invalid BLOB returned from '{url}', bad mimetype")
        return Blob(ctype, content)
