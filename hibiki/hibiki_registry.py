"""
The invalidation registry.

Mounted data nodes register a query string and a refresh callback. An
invalidation sweep selects registrations by exact query, by regex, or all of
them. Inside a batch the selected refreshes are deferred, de-duplicated, and
run once when the outermost batch closes; outside a batch they run
immediately. A failing refresh is logged and the sweep continues.
"""

import re
import weakref
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional


class Registration:
    def __init__(self, reg_id: Any, query: str, refresh: Callable[[], Any]):
        self.reg_id = reg_id
        self.query = query
        # Bound methods are held weakly so an unmounted owner can be collected.
        if hasattr(refresh, "__self__") and hasattr(refresh, "__func__"):
            self._ref = weakref.WeakMethod(refresh)
        else:
            self._ref = lambda: refresh

    @property
    def callback(self) -> Optional[Callable[[], Any]]:
        return self._ref()

    def __repr__(self) -> str:
        return f"<Registration {self.reg_id!r} query={self.query!r}>"


class InvalidationRegistry:
    def __init__(self, log: Optional[Callable[..., None]] = None):
        self._entries: Dict[Any, Registration] = {}
        self._pending: Dict[Any, Registration] = {}
        self._batch_depth = 0
        self._log = log or (lambda *parts: None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, reg_id) -> bool:
        return reg_id in self._entries

    @property
    def in_batch(self) -> bool:
        return self._batch_depth > 0

    def register(self, reg_id: Any, query: str, refresh: Callable[[], Any]):
        self._entries[reg_id] = Registration(reg_id, query, refresh)

    def unregister(self, reg_id: Any):
        self._entries.pop(reg_id, None)
        self._pending.pop(reg_id, None)

    def query_for(self, reg_id: Any) -> Optional[str]:
        reg = self._entries.get(reg_id)
        return reg.query if reg is not None else None

    # --- Sweeps -------------------------------------------------------

    def invalidate(self, query: str) -> int:
        return self._sweep(lambda reg: reg.query == query)

    def invalidate_by_pattern(self, pattern: str) -> int:
        """Selects registrations whose query matches pattern anywhere (re.search)."""
        rx = re.compile(pattern)
        return self._sweep(lambda reg: rx.search(reg.query) is not None)

    def invalidate_all(self) -> int:
        return self._sweep(lambda reg: True)

    def _sweep(self, pred: Callable[[Registration], bool]) -> int:
        selected = [reg for reg in self._entries.values() if pred(reg)]
        if self._batch_depth > 0:
            for reg in selected:
                self._pending[reg.reg_id] = reg
        else:
            self._run(selected)
        return len(selected)

    def _run(self, regs):
        for reg in regs:
            if self._entries.get(reg.reg_id) is not reg:
                continue
            cb = reg.callback
            if cb is None:
                self._entries.pop(reg.reg_id, None)
                continue
            try:
                cb()
            except Exception as e:
                self._log(f"Error refreshing data node {reg.reg_id!r} (query {reg.query!r}):", e)

    # --- Batching -----------------------------------------------------

    @contextmanager
    def batch(self):
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._pending:
                pending, self._pending = self._pending, {}
                self._run(list(pending.values()))
