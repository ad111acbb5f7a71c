"""
A pretty-printer for Hibiki runtime values, used for diagnostic messages.
"""
import collections.abc

from hibiki.hibiki_datatypes import Blob, ErrorReport, Node, RuntimeContext
from hibiki.hibiki_env import ContextProxy, DataEnvironment
from hibiki.hibiki_paths import LValue


class Printer:
    """Formats runtime values into short, readable strings."""

    def __init__(self, indent_width=2, max_depth=6):
        self._indent_char = " " * indent_width
        self._max_depth = max_depth
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        if level > self._max_depth:
            return "..."
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, LValue): return self._pformat_lvalue
        if isinstance(obj, BaseException): return self._pformat_exception
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Blob: self._pformat_blob,
            Node: self._pformat_node,
            DataEnvironment: self._pformat_env,
            ContextProxy: self._pformat_context,
            ErrorReport: self._pformat_error_report,
            RuntimeContext: self._pformat_rtctx,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return f'"{obj}"' if level > 0 else obj

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_blob(self, obj, level):
        return f"<blob {obj.mimetype} {len(obj)} bytes>"

    def _pformat_node(self, obj, level):
        if obj.tag == "#text":
            return f"<#text {obj.text!r}>"
        return f"<{obj.tag}>"

    def _pformat_lvalue(self, obj, level):
        return f"<ref {obj.as_string()}>"

    def _pformat_env(self, obj, level):
        return f"<scope {obj.description or 'anonymous'}>"

    def _pformat_context(self, obj, level):
        return "<context>"

    def _pformat_exception(self, obj, level):
        return f"{type(obj).__name__}: {obj}"

    def _pformat_error_report(self, obj, level):
        return obj.format()

    def _pformat_rtctx(self, obj, level):
        return obj.as_string()

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        items = [f"{self.pformat(str(k), level + 1)}: {self.pformat(v, level + 1)}" for k, v in obj.items()]
        return "{" + ", ".join(items) + "}"

    def _pformat_list(self, obj, level):
        return "[" + ", ".join(self.pformat(v, level + 1) for v in obj) + "]"


def pformat(obj) -> str:
    return Printer().pformat(obj)
