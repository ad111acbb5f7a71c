import pytest
from hibiki.hibiki_datatypes import (
    EventBoundary, EventType, ErrorReport, HandlerExecutionError, HandlerVal, RuntimeContext,
)
from hibiki.hibiki_events import event_bubbles, find_event_handler, fire_event
from hibiki.hibiki_state import HibikiState


@pytest.fixture
def state():
    st = HibikiState()
    st.reports = []
    st.error_callback = st.reports.append
    return st

def stderr_messages(state):
    return [e['message'] for e in state.side_effects if 'stderr' in e['topics']]

def build_chain(state, mid_handlers=None, root_handlers=None):
    root = state.root_dataenv().make_child_env({}, handlers=root_handlers or {}, event_boundary=EventBoundary.HARD, description="root")
    mid = root.make_child_env({}, handlers=mid_handlers or {}, event_boundary=EventBoundary.SOFT, description="mid")
    leaf = mid.make_child_env({}, description="leaf")
    return root, mid, leaf

# --- Bubbling rules ---

@pytest.mark.parametrize("name, bubble, expected", [
    ("click", True, True),
    ("click", False, False),
    ("load", True, False),
    ("x-custom", True, False),
    ("x:custom", True, False),
    ("x.custom", True, False),
    ("xylophone", True, True),
])
def test_event_bubbles(name, bubble, expected):
    assert event_bubbles(EventType(name, bubble=bubble)) is expected

def test_boundary_resolution(state):
    root, mid, leaf = build_chain(state, mid_handlers={"click": "- log: mid"})
    assert find_event_handler(leaf, EventType("click")) is mid
    assert leaf.get_event_boundary("hover") is root
    assert find_event_handler(leaf, EventType("hover", bubble=False)) is None

def test_bubbling_passes_boundary_without_handler(state):
    top = state.root_dataenv().make_child_env({}, handlers={"hover": "- log: top", "load": "- log: top"}, event_boundary="soft")
    root = top.make_child_env({}, event_boundary="hard")
    leaf = root.make_child_env({})
    assert find_event_handler(leaf, EventType("hover", bubble=True)) is top
    assert find_event_handler(leaf, EventType("hover", bubble=False)) is None
    assert find_event_handler(leaf, EventType("load", bubble=True)) is None
    assert find_event_handler(top, EventType("load")) is top

# --- Firing ---

@pytest.mark.asyncio
async def test_fire_runs_handler_with_event_specials(state):
    _, mid, leaf = build_chain(state, mid_handlers={
        "click": "- set: $state.clicked\n  expr: '@item'\n- return: {expr: '@item'}",
    })
    rv = await leaf.fire_event(EventType("click", {"item": 42}))
    assert rv == 42
    assert state.data_roots["state"]["clicked"] == 42
    assert "item" not in mid.specials

@pytest.mark.asyncio
async def test_unhandled_event_is_logged(state):
    _, _, leaf = build_chain(state)
    rv = await fire_event(leaf, EventType("hover", bubble=False))
    assert rv is None
    assert any("Unhandled event 'hover'" in m for m in stderr_messages(state))
    assert state.reports == []

@pytest.mark.asyncio
async def test_unhandled_error_event_goes_to_error_callback(state):
    _, _, leaf = build_chain(state)
    report = ErrorReport("something broke")
    await leaf.fire_event(EventType("error", {"error": report}, bubble=True))
    assert state.reports == [report]

@pytest.mark.asyncio
async def test_unhandled_error_event_with_exception_payload(state):
    _, _, leaf = build_chain(state)
    await leaf.fire_event(EventType("error", {"error": KeyError("k")}))
    assert len(state.reports) == 1
    assert isinstance(state.reports[0].err, KeyError)

@pytest.mark.asyncio
async def test_wildcard_handler(state):
    root = state.root_dataenv().make_child_env({}, handlers={"*": "- return: star"}, event_boundary="soft")
    assert await root.fire_event(EventType("*")) == "star"

@pytest.mark.asyncio
async def test_parent_env_handler_runs_in_parent(state):
    outer = state.root_dataenv().make_child_env({"who": "outer"})
    comp = outer.make_child_env(
        {"who": "comp"},
        handlers={"go": HandlerVal("- return: {expr: '$local.who'}", parent_env=True)},
        event_boundary="hard",
    )
    assert await comp.make_child_env({}).fire_event(EventType("go")) == "outer"

# --- Errors ---

@pytest.mark.asyncio
async def test_handler_failure_is_reported_with_trail(state):
    _, _, leaf = build_chain(state, mid_handlers={"click": "- set: $state.n.x\n  value: 1"})
    state.data_roots["state"]["n"] = 5
    rv = await leaf.fire_event(EventType("click"))
    assert rv is None
    assert len(state.reports) == 1
    report = state.reports[0]
    assert isinstance(report.err, TypeError)
    assert any(f.startswith("Running handler for event 'click'") for f in report.rtctx.frames)
    assert "set: $state.n.x" in report.block_str

@pytest.mark.asyncio
async def test_parse_failure_keeps_parse_frame(state):
    _, _, leaf = build_chain(state, mid_handlers={"click": "just a string"})
    await leaf.fire_event(EventType("click"))
    report = state.reports[0]
    assert report.rtctx.frames[-1].startswith("Parsing handler for event 'click'")

@pytest.mark.asyncio
async def test_throw_on_error_raises_wrapped(state):
    _, _, leaf = build_chain(state, mid_handlers={"click": "- set: '$bogus.x'\n  value: 1"})
    rtctx = RuntimeContext(["outer frame"])
    with pytest.raises(HandlerExecutionError) as ei:
        await leaf.fire_event(EventType("click"), rtctx, throw_on_error=True)
    assert ei.value.rtctx is rtctx
    assert ei.value.__cause__ is not None
    assert rtctx.frames[0] == "outer frame"
    assert state.reports == []

@pytest.mark.asyncio
async def test_handler_failure_fires_error_event(state):
    root, mid, leaf = build_chain(
        state,
        mid_handlers={"click": "- set: '$bogus.x'\n  value: 1"},
        root_handlers={"error": "- set: $state.caught\n  expr: '@error'"},
    )
    await leaf.fire_event(EventType("click"))
    caught = state.data_roots["state"]["caught"]
    assert isinstance(caught, ErrorReport)
    assert "Error running handler for event 'click'" in caught.message
    assert state.reports == []

@pytest.mark.asyncio
async def test_failing_error_handler_reports_directly(state):
    build = build_chain(
        state,
        mid_handlers={"click": "- set: '$bogus.x'\n  value: 1"},
        root_handlers={"error": "- set: '$bogus.y'\n  value: 1"},
    )
    leaf = build[2]
    await leaf.fire_event(EventType("click"))
    assert len(state.reports) == 2
    assert state.reports[1].message == "Error in error handler"

@pytest.mark.asyncio
async def test_no_error_callback_falls_back_to_log():
    st = HibikiState()
    env = st.root_dataenv().make_child_env({}, handlers={"click": "- set: '$bogus.x'\n  value: 1"}, event_boundary="soft")
    await env.fire_event(EventType("click"))
    assert any(m.startswith("Hibiki Error |") for m in stderr_messages(st))

@pytest.mark.asyncio
async def test_nested_fire_from_handler(state):
    root, mid, leaf = build_chain(
        state,
        mid_handlers={"click": "- fire: saved\n  bubble: true\n  data: {id: {expr: '@id'}}"},
        root_handlers={"saved": "- set: $state.saved\n  expr: '@id'"},
    )
    await leaf.fire_event(EventType("click", {"id": 7}))
    assert state.data_roots["state"]["saved"] == 7

@pytest.mark.asyncio
async def test_nested_failure_leaves_caller_trail_intact(state):
    _, _, leaf = build_chain(
        state,
        mid_handlers={"click": "- fire: saved\n  bubble: true\n- return: done"},
        root_handlers={"saved": "- set: '$bogus.x'\n  value: 1"},
    )
    rtctx = RuntimeContext(["outer"])
    rv = await leaf.fire_event(EventType("click"), rtctx)
    assert rv == "done"
    assert rtctx.frames == ["outer"]
    assert len(state.reports) == 1
    frames = state.reports[0].rtctx.frames
    assert frames[0] == "outer"
    assert frames[1].startswith("Running handler for event 'click'")
    assert frames[-1].startswith("Running handler for event 'saved'")
