import base64

import pytest
from hibiki.hibiki_actions import Action, process_actions, result_actions, apply_setop
from hibiki.hibiki_datatypes import Blob, MalformedAction, NoBlobToExtend, Node
from hibiki.hibiki_state import HibikiState


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()

@pytest.fixture
def state():
    return HibikiState()

def stderr_messages(state):
    return [e['message'] for e in state.side_effects if 'stderr' in e['topics']]

# --- Normalisation ---

def test_from_record_aliases_and_selector_fallback():
    a = Action.from_record({"type": "assign", "path": "$state.x", "data": 1})
    assert a.kind == "setdata" and a.selector == "$state.x" and a.setop == "set"
    assert Action.from_record({"type": "blob-extend", "selector": "$.b", "blobbase64": ""}).kind == "blobext"
    assert Action.from_record({"type": "replace-document", "data": {"tag": "html"}}).kind == "html"

@pytest.mark.parametrize("record", [
    "not-a-dict",
    {"type": "explode", "selector": "$.x"},
    {"selector": "$.x", "data": 1},
    {"type": "setdata", "data": 1},
    {"type": "setdata", "selector": "$.x"},
    {"type": "setdata", "selector": "$.x", "data": 1, "setop": "frobnicate"},
    {"type": "setdata", "selector": 5, "data": 1},
    {"type": "blob", "selector": "$.x"},
    {"type": "html"},
])
def test_from_record_rejects_malformed(record):
    with pytest.raises(MalformedAction):
        Action.from_record(record)

def test_result_actions():
    assert result_actions({"actions": [1]}) == [1]
    assert result_actions({"hibikiactions": [2]}) == [2]
    assert result_actions({"actions": "nope"}) is None
    assert result_actions([1, 2]) is None
    assert result_actions(None) is None

# --- Application ---

def test_setdata_copies_values(state):
    payload = {"n": [1]}
    state.run_actions([{"type": "setdata", "selector": "$state.obj", "data": payload}])
    payload["n"].append(2)
    assert state.data_roots["state"]["obj"] == {"n": [1]}

def test_malformed_action_is_skipped_not_fatal(state):
    state.run_actions([
        {"type": "setdata", "selector": "$state.a", "data": 1},
        {"type": "bogus"},
        {"type": "setdata", "selector": "$state.b", "data": 2},
    ])
    assert state.data_roots["state"] == {"a": 1, "b": 2}
    assert any("Skipping action #1" in m for m in stderr_messages(state))

def test_failing_write_is_skipped(state):
    state.data_roots["state"]["n"] = 5
    state.run_actions([
        {"type": "setdata", "selector": "$state.n.x", "data": 1},
        {"type": "setdata", "selector": "not a path", "data": 1},
        {"type": "setdata", "selector": "$state.ok", "data": True},
    ])
    assert state.data_roots["state"]["ok"] is True

def test_severity_raise_aborts(state):
    state.set_config({"action_severity": {"setdata": "raise"}})
    with pytest.raises(TypeError):
        state.run_actions([
            {"type": "assign", "selector": "$state.a", "data": 1},
            {"type": "assign", "selector": "$state.a.b", "data": 2},
            {"type": "assign", "selector": "$state.c", "data": 3},
        ])
    assert state.data_roots["state"] == {"a": 1}

def test_severity_wildcard(state):
    state.set_config({"action-severity": {"*": "raise"}})
    with pytest.raises(MalformedAction):
        state.run_actions([{"type": "bogus"}])

def test_setops(state):
    env = state.root_dataenv()
    lv = env.make_lvalue("$state.xs")
    apply_setop(lv, "append", 1)
    apply_setop(lv, "append", 2)
    apply_setop(lv, "prepend", 0)
    assert lv.get() == [0, 1, 2]
    m = env.make_lvalue("$state.m")
    apply_setop(m, "merge", {"a": 1})
    apply_setop(m, "merge", {"b": 2})
    assert m.get() == {"a": 1, "b": 2}
    apply_setop(m, "setunless", {"c": 3})
    assert m.get() == {"a": 1, "b": 2}
    u = env.make_lvalue("$state.u")
    apply_setop(u, "setunless", 7)
    assert u.get() == 7
    apply_setop(u, "delete", None)
    assert "u" not in state.data_roots["state"]
    with pytest.raises(TypeError):
        apply_setop(m, "append", 1)

def test_setop_via_actions(state):
    state.run_actions([
        {"type": "setdata", "selector": "$state.log", "setop": "append", "data": "a"},
        {"type": "setdata", "selector": "$state.log", "setop": "append", "data": "b"},
        {"type": "setdata", "selector": "$state.gone", "data": 1},
        {"type": "setdata", "selector": "$state.gone", "setop": "delete"},
    ])
    assert state.data_roots["state"] == {"log": ["a", "b"]}

def test_blob_and_blobext(state):
    state.run_actions([
        {"type": "blob", "selector": "$state.img", "mimetype": "image/png", "blobbase64": b64(b"ab")},
        {"type": "blobext", "selector": "$state.img", "blobbase64": b64(b"cd")},
    ])
    img = state.data_roots["state"]["img"]
    assert isinstance(img, Blob)
    assert img.mimetype == "image/png" and img.data == b"abcd"

def test_blobext_without_blob_is_logged(state):
    state.run_actions([{"type": "blobext", "selector": "$state.none", "blobbase64": b64(b"x")}])
    assert any("no blob to extend" in m for m in stderr_messages(state))

def test_replace_document(state):
    state.run_actions([{"type": "html", "data": {"tag": "html", "list": [{"tag": "page"}]}}])
    assert isinstance(state.html_obj, Node)
    assert state.html_obj.children[0].tag == "page"

def test_replace_document_from_markup_uses_parser():
    st = HibikiState(html_parser=lambda text: Node("parsed", attrs={"src": text}))
    st.run_actions([{"type": "replace-document", "data": "<html></html>"}])
    assert st.html_obj.tag == "parsed"

def test_replace_document_from_markup_without_parser_is_logged(state):
    state.run_actions([{"type": "html", "data": "<html></html>"}])
    assert state.html_obj is None
    assert any("no html parser" in m for m in stderr_messages(state))

# --- Return value capture ---

def test_return_capture_in_capture_only_mode(state):
    refreshed = []
    state.register_data_node("n1", "q", lambda: refreshed.append(True))
    rv = state.process_actions([
        {"type": "assign", "selector": "@rtn", "data": 5},
        {"type": "invalidate", "selector": "q"},
        {"type": "assign", "selector": "$state.x", "data": 1},
    ], capture_only=True)
    assert rv == 5
    assert refreshed == []
    assert "x" not in state.data_roots["state"]

def test_return_capture_last_assign_wins(state):
    rv = state.run_actions([
        {"type": "setdata", "selector": "@rtn", "data": 1},
        {"type": "setdata", "selector": "@rtn", "data": 2},
    ])
    assert rv == 2

def test_return_blob_capture(state):
    rv = state.run_actions([
        {"type": "blob", "selector": "@rtn", "mimetype": "text/plain", "blobbase64": b64(b"he")},
        {"type": "blobext", "selector": "@rtn", "blobbase64": b64(b"llo")},
    ])
    assert rv == Blob("text/plain", b"hello")

def test_return_blobext_without_blob(state):
    rv = state.run_actions([{"type": "blobext", "selector": "@rtn", "blobbase64": b64(b"x")}])
    assert rv is None
    assert any("no blob to extend" in m for m in stderr_messages(state))

def test_no_actions_returns_none(state):
    assert process_actions(state, None) is None
    assert process_actions(state, []) is None

# --- Invalidation ordering ---

def test_refresh_observes_whole_batch(state):
    seen = []
    env = state.root_dataenv()
    state.register_data_node("n1", "q", lambda: seen.append(env.resolve_path("$global.a")))
    state.run_actions([
        {"type": "setdata", "selector": "$global.a", "data": 1},
        {"type": "invalidate", "selector": "q"},
        {"type": "setdata", "selector": "$global.a", "data": 2},
    ])
    assert seen == [2]

def test_invalidate_without_selector_refreshes_all(state):
    seen = []
    state.register_data_node("a", "/x", lambda: seen.append("a"))
    state.register_data_node("b", "/y", lambda: seen.append("b"))
    state.run_actions([{"type": "invalidate"}])
    assert sorted(seen) == ["a", "b"]

def test_invalidate_bad_regex_is_logged(state):
    state.run_actions([{"type": "invalidate", "selector": "("}])
    assert any("Skipping action #0" in m for m in stderr_messages(state))
