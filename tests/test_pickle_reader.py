"""
Tests for the restricted pickle interpreter.
"""
import collections
import pickle

import pytest

from utils.pickle_reader import PickleError, PickleReader, PythonGlobal, PythonObject, loads

PLAIN = {
    "int1": 7,
    "int2": 300,
    "int4": 70000,
    "neg": -5,
    "big": 2**70,
    "huge": -(2**2100),
    "float": 2.5,
    "text": "héllo",
    "long_text": "x" * 300,
    "none": None,
    "flags": [True, False],
    "tuples": [(), (1, ), (1, 2), (1, 2, 3), (1, 2, 3, 4, 5)],
    "nested": {"a": [1, [2, [3]]], "b": {"c": 0.125}},
}

@pytest.mark.parametrize("protocol", [2, 3, 4, 5])
def test_plain_values_round_trip(protocol):
    assert loads(pickle.dumps(PLAIN, protocol=protocol)) == PLAIN

@pytest.mark.parametrize("protocol", [2, 3, 4, 5])
def test_bytes_and_sets(protocol):
    value = {"raw": b"\x00\x01\xff", "long_raw": b"z" * 400, "set": {1, 2, 3}, "frozen": frozenset({"a"})}
    assert loads(pickle.dumps(value, protocol=protocol)) == value

def test_legacy_text_protocol():
    value = {"a": [1, 2.5, "s", None], "b": (True, False)}
    assert loads(pickle.dumps(value, protocol=0)) == value

def test_shared_references_use_memo():
    inner = [1, 2]
    out = loads(pickle.dumps({"x": inner, "y": inner}, protocol=4))
    assert out["x"] is out["y"]

@pytest.mark.parametrize("protocol", [2, 4])
def test_ordered_dict_becomes_dict(protocol):
    od = collections.OrderedDict([("b", 1), ("a", 2)])
    out = loads(pickle.dumps(od, protocol=protocol))
    assert out == {"b": 1, "a": 2}
    assert list(out) == ["b", "a"]

@pytest.mark.parametrize("protocol", [2, 4])
def test_globals_are_not_imported(protocol):
    out = loads(pickle.dumps(collections.Counter, protocol=protocol))
    assert out == PythonGlobal("collections", "Counter")

def test_unknown_reduce_yields_placeholder():
    out = loads(pickle.dumps(collections.Counter(a=2), protocol=2))
    assert isinstance(out, PythonObject)
    assert out.cls.full_name == "collections.Counter"

def test_persistent_ids_go_through_callback():
    class Writer(pickle.Pickler):
        def persistent_id(self, obj):
            return ("storage", "FloatStorage", "0", "cpu", 4) if obj == "TENSOR" else None

    import io
    buf = io.BytesIO()
    Writer(buf, protocol=2).dump({"w": "TENSOR"})
    seen = []
    out = PickleReader(buf.getvalue(), persistent_load=lambda pid: seen.append(pid) or "loaded").load()
    assert out == {"w": "loaded"}
    assert seen == [("storage", "FloatStorage", "0", "cpu", 4)]

def test_unsupported_opcode_names_opcode_and_offset():
    with pytest.raises(PickleError, match=r"0xFF at offset 2"):
        loads(b"\x80\x02\xff.")

def test_truncated_payload():
    data = pickle.dumps("a longer string", protocol=2)
    with pytest.raises(PickleError, match="truncated"):
        loads(data[:-4])

def test_missing_stop():
    with pytest.raises(PickleError, match="without STOP"):
        loads(b"\x80\x02N")

def test_stack_underflow():
    with pytest.raises(PickleError):
        loads(b"\x80\x02\x85.")
