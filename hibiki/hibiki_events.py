"""
Event dispatch over the scope chain.

An event searches upward for the nearest boundary that claims it. A boundary
with a handler for the event runs it in a child scope that binds the event's
data as specials. A boundary without one passes bubbling events on to its
parent and stops non-bubbling ones. Handler failures are turned into an
`error` event fired from the failing scope; an `error` event nobody handles
goes to the state's error reporter.
"""

import re
from typing import Any, Optional

from hibiki.hibiki_datatypes import (
    ErrorReport, EventType, HandlerExecutionError, RuntimeContext, UnhandledEvent,
)


NON_BUBBLING_EVENTS = frozenset({"load"})

_NAMESPACED_EVENT_RE = re.compile(r"^x[-:.]")


def event_bubbles(event: EventType) -> bool:
    if event.event in NON_BUBBLING_EVENTS or _NAMESPACED_EVENT_RE.match(event.event):
        return False
    return bool(event.bubble)


def find_event_handler(env, event: EventType):
    """The scope whose handler will run for event, or None if unhandled."""
    cur = env
    while cur is not None:
        boundary = cur.get_event_boundary(event.event)
        if boundary is None:
            return None
        if event.event in boundary.handlers:
            return boundary
        if not event_bubbles(event):
            return None
        cur = boundary.parent
    return None


async def fire_event(env, event: EventType, rtctx: Optional[RuntimeContext] = None,
                     throw_on_error: bool = False) -> Any:
    state = env.state
    if rtctx is None:
        rtctx = RuntimeContext()
    handler_env = find_event_handler(env, event)
    if handler_env is None:
        report_unhandled(state, event, rtctx)
        return None

    hval = handler_env.handlers[event.event]
    exec_env = handler_env.parent if (hval.parent_env and handler_env.parent is not None) else handler_env
    child = exec_env.make_special_child_env(event.datacontext, description=f"event:{event.event}")
    label = f"handler for event '{event.event}' in [[{handler_env.get_html_context()}]]"
    engine = state.engine
    depth = len(rtctx)
    try:
        rtctx.push_context(f"Parsing {label}")
        block = engine.parse_block(hval.handler_str)
        rtctx.pop_context()
        rtctx.push_context(f"Running {label}")
        rv = await engine.execute_block(block, child, rtctx)
        rtctx.pop_context()
        return rv
    except Exception as e:
        if throw_on_error:
            if isinstance(e, HandlerExecutionError):
                raise
            raise HandlerExecutionError(f"Error running {label}: {e}", rtctx=rtctx) from e
        report = ErrorReport(
            message=f"Error running {label}",
            err=e,
            rtctx=rtctx.copy(),
            block_str=hval.handler_str,
        )
        del rtctx.frames[depth:]
        await report_error_event(child, report)
        return None


async def report_error_event(env, report: ErrorReport):
    """Fires an `error` event carrying report, falling back to the state's reporter.

    A failure inside the error handler itself is reported directly and never
    re-enters error dispatch.
    """
    state = env.state
    event = EventType("error", {"error": report}, bubble=True)
    if find_event_handler(env, event) is None:
        state.report_error_obj(report)
        return
    rtctx = report.rtctx.copy() if report.rtctx is not None else None
    try:
        await fire_event(env, event, rtctx, throw_on_error=True)
    except Exception as e:
        state.report_error_obj(report)
        state.report_error_obj(ErrorReport(
            message="Error in error handler",
            err=e,
            rtctx=getattr(e, "rtctx", None),
        ))


def report_unhandled(state, event: EventType, rtctx: Optional[RuntimeContext] = None):
    if event.event == "error" and event.datacontext.get("error") is not None:
        err = event.datacontext["error"]
        if isinstance(err, ErrorReport):
            state.report_error_obj(err)
        else:
            state.report_error_obj(ErrorReport(
                message=str(err),
                err=err if isinstance(err, BaseException) else None,
                rtctx=rtctx,
            ))
        return
    state.log(str(UnhandledEvent(event.event)))
