import pytest
from hibiki.hibiki_datatypes import Blob, ErrorReport, Node
from hibiki.hibiki_state import HibikiState
from hibiki.hibiki_values import ValueKind, value_kind, deep_copy, deep_equal, has_cycle, to_plain


@pytest.fixture
def state():
    return HibikiState()

@pytest.mark.parametrize("value, kind", [
    (None, ValueKind.NULL),
    (True, ValueKind.BOOL),
    (3, ValueKind.NUMBER),
    (2.5, ValueKind.NUMBER),
    ("s", ValueKind.STRING),
    ([1], ValueKind.SEQUENCE),
    ((1,), ValueKind.SEQUENCE),
    ({"a": 1}, ValueKind.MAPPING),
    (Blob("a/b"), ValueKind.BLOB),
    (Node("div"), ValueKind.NODE),
    (ValueError("x"), ValueKind.ERROR),
    (ErrorReport("x"), ValueKind.ERROR),
    (object(), ValueKind.OTHER),
])
def test_value_kind(value, kind):
    assert value_kind(value) is kind

def test_value_kind_reference_and_scope(state):
    env = state.root_dataenv()
    assert value_kind(env.make_lvalue("$state.x")) is ValueKind.REFERENCE
    assert value_kind(env) is ValueKind.SCOPE
    assert value_kind(env.get_context_proxy()) is ValueKind.SCOPE

def test_deep_copy_shares_references_and_clones_plain_data(state):
    env = state.root_dataenv()
    env.set_data_path("$state.target", 1)
    ref = env.make_lvalue("$state.target")
    original = {"ref": ref, "obj": {"n": [1, 2]}}
    copied = deep_copy(original)

    assert copied["ref"] is ref
    copied["ref"].set(2)
    assert original["ref"].get() == 2

    copied["obj"]["n"].append(3)
    assert original["obj"]["n"] == [1, 2]

def test_deep_copy_blob_is_independent():
    b = Blob("a/b", b"x")
    c = deep_copy({"b": b})["b"]
    assert c == b and c is not b

def test_deep_copy_preserves_tuples():
    assert deep_copy((1, [2])) == (1, [2])

def test_deep_copy_shared_subtree_is_not_a_cycle():
    shared = {"v": 1}
    out = deep_copy([shared, shared])
    assert out == [{"v": 1}, {"v": 1}]

def test_deep_copy_cycle_raises():
    a = {}
    a["self"] = a
    with pytest.raises(ValueError):
        deep_copy(a)

def test_has_cycle():
    a = [1]
    a.append(a)
    assert has_cycle(a)
    shared = [1]
    assert not has_cycle([shared, shared])
    assert not has_cycle(5)

def test_deep_equal_basics():
    assert deep_equal({"a": [1, {"b": None}]}, {"a": [1, {"b": None}]})
    assert not deep_equal({"a": 1}, {"a": 1, "b": 2})
    assert not deep_equal(True, 1)
    assert deep_equal(1, 1.0)
    assert not deep_equal([1, 2], [2, 1])
    assert deep_equal(Blob("a/b", b"x"), Blob("a/b", b"x"))
    assert not deep_equal(Blob("a/b", b"x"), Blob("a/c", b"x"))

def test_deep_equal_references(state):
    a = state.root_dataenv().make_lvalue("$state.x")
    b = state.root_dataenv().make_lvalue("$state.x")
    c = state.root_dataenv().make_lvalue("$state.y")
    assert deep_equal(a, b)
    assert not deep_equal(a, c)
    assert not deep_equal(a, None)

def test_to_plain(state):
    env = state.root_dataenv()
    env.set_data_path("$state.x", {"n": 1})
    proxy = env.make_child_env(None, {"k": "v"}).get_context_proxy()
    out = to_plain({
        "ref": env.make_lvalue("$state.x"),
        "blob": Blob("text/plain", b"hi"),
        "node": Node("div"),
        "ctx": proxy,
        "scope": env,
        "tup": (1, 2),
        3: "int-key",
    })
    assert out == {
        "ref": {"n": 1},
        "blob": {"mimetype": "text/plain", "data": "aGk="},
        "node": {"tag": "div"},
        "ctx": {"k": "v"},
        "scope": None,
        "tup": [1, 2],
        "3": "int-key",
    }

def test_to_plain_cycle_raises():
    a = []
    a.append(a)
    with pytest.raises(ValueError):
        to_plain(a)
