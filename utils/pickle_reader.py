"""
Restricted pickle interpreter for checkpoint archives.

Reads the pickle stream stored as `data.pkl` inside a torch `.pt` zip without
importing or executing anything named in the stream. Globals become
`PythonGlobal` markers, unknown constructor calls become `PythonObject`
placeholders, and dict-like constructors produce real dicts so that the
state tree can be walked afterwards.
"""
import struct
from typing import Any, Callable, Dict, List, Optional

class PickleError(Exception):
    """Malformed, truncated or unsupported pickle stream."""

class PythonGlobal:
    """A `module.name` reference from GLOBAL / STACK_GLOBAL."""
    __slots__ = ("module", "name")

    def __init__(self, module: str, name: str):
        self.module = module
        self.name = name

    @property
    def full_name(self) -> str:
        return f"{self.module}.{self.name}"

    def __eq__(self, other):
        return isinstance(other, PythonGlobal) and (self.module, self.name) == (other.module, other.name)

    def __hash__(self):
        return hash((self.module, self.name))

    def __repr__(self):
        return f"PythonGlobal({self.full_name})"

class PythonObject:
    """Placeholder for an object whose class is not reconstructed."""
    def __init__(self, cls: PythonGlobal, args: Optional[List[Any]] = None):
        self.cls = cls
        self.args = list(args or [])
        self.state: Any = None

    def get_state(self, key: str, default: Any = None) -> Any:
        if isinstance(self.state, dict):
            return self.state.get(key, default)
        # (dict_state, slots_state) pairs from __reduce_ex__
        if isinstance(self.state, tuple) and self.state and isinstance(self.state[0], dict):
            return self.state[0].get(key, default)
        return default

    def __repr__(self):
        return f"PythonObject({self.cls.full_name})"

DICT_TYPES = {
    ("collections", "OrderedDict"),
    ("builtins", "dict"),
    ("__builtin__", "dict"),
    ("collections", "defaultdict"),
}

# builtin constructors that protocol 2 emits through REDUCE
CONTAINER_TYPES = {
    ("builtins", "set"): set,
    ("__builtin__", "set"): set,
    ("builtins", "frozenset"): frozenset,
    ("__builtin__", "frozenset"): frozenset,
    ("builtins", "list"): list,
    ("builtins", "tuple"): tuple,
    ("builtins", "bytearray"): bytearray,
}

# CPython opcode byte values
PROTO = 0x80
FRAME = 0x95
STOP = 0x2E
NONE = 0x4E
NEWTRUE = 0x88
NEWFALSE = 0x89
INT = 0x49
BININT = 0x4A
BININT1 = 0x4B
BININT2 = 0x4D
LONG = 0x4C
LONG1 = 0x8A
LONG4 = 0x8B
FLOAT = 0x46
BINFLOAT = 0x47
UNICODE = 0x56
SHORT_BINUNICODE = 0x8C
BINUNICODE = 0x58
BINUNICODE8 = 0x8D
BINSTRING = 0x54
SHORT_BINSTRING = 0x55
SHORT_BINBYTES = 0x43
BINBYTES = 0x42
BINBYTES8 = 0x8E
BYTEARRAY8 = 0x96
EMPTY_TUPLE = 0x29
TUPLE1 = 0x85
TUPLE2 = 0x86
TUPLE3 = 0x87
TUPLE = 0x74
EMPTY_LIST = 0x5D
APPEND = 0x61
APPENDS = 0x65
LIST = 0x6C
EMPTY_DICT = 0x7D
DICT = 0x64
SETITEM = 0x73
SETITEMS = 0x75
EMPTY_SET = 0x8F
ADDITEMS = 0x90
FROZENSET = 0x91
MARK = 0x28
POP = 0x30
POP_MARK = 0x31
DUP = 0x32
PUT = 0x70
BINPUT = 0x71
LONG_BINPUT = 0x72
MEMOIZE = 0x94
GET = 0x67
BINGET = 0x68
LONG_BINGET = 0x6A
GLOBAL = 0x63
STACK_GLOBAL = 0x93
REDUCE = 0x52
BUILD = 0x62
NEWOBJ = 0x81
NEWOBJ_EX = 0x92
BINPERSID = 0x51

class _Stop(Exception):
    def __init__(self, value):
        self.value = value

class PickleReader:
    """
    Interpret a pickle byte stream into plain Python values.

    Args:
        data: the raw pickle bytes.
        persistent_load: called with the BINPERSID id (usually a tuple) and
            must return the object to push. Without it, persistent ids are
            returned as `PythonObject(_persistent.load, [pid])`.

    Subclasses customize object reconstruction by overriding `reduce`.
    """
    def __init__(self, data: bytes, persistent_load: Optional[Callable[[Any], Any]] = None):
        self.data = memoryview(bytes(data))
        self._persistent_load = persistent_load
        self.pos = 0
        self.stack: List[Any] = []
        self.metastack: List[List[Any]] = []
        self.memo: Dict[int, Any] = {}
        self._op = 0
        self._op_pos = 0
        self.dispatch: Dict[int, Callable[[], None]] = {
            PROTO: self._proto,
            FRAME: self._frame,
            STOP: self._stop,
            NONE: lambda: self.stack.append(None),
            NEWTRUE: lambda: self.stack.append(True),
            NEWFALSE: lambda: self.stack.append(False),
            INT: self._int,
            BININT: lambda: self.stack.append(self._unpack("<i", 4)),
            BININT1: lambda: self.stack.append(self._read(1)[0]),
            BININT2: lambda: self.stack.append(self._unpack("<H", 2)),
            LONG: self._long,
            LONG1: lambda: self.stack.append(self._read_long(self._read(1)[0])),
            LONG4: lambda: self.stack.append(self._read_long(self._unpack("<i", 4))),
            FLOAT: lambda: self.stack.append(float(self._readline())),
            BINFLOAT: lambda: self.stack.append(self._unpack(">d", 8)),
            UNICODE: lambda: self.stack.append(self._readline().decode("raw-unicode-escape")),
            SHORT_BINUNICODE: lambda: self.stack.append(self._read_str(self._read(1)[0])),
            BINUNICODE: lambda: self.stack.append(self._read_str(self._unpack("<I", 4))),
            BINUNICODE8: lambda: self.stack.append(self._read_str(self._unpack("<Q", 8))),
            # Python 2 str payloads; latin-1 keeps every byte
            BINSTRING: lambda: self.stack.append(self._read(self._unpack("<i", 4)).decode("latin-1")),
            SHORT_BINSTRING: lambda: self.stack.append(self._read(self._read(1)[0]).decode("latin-1")),
            SHORT_BINBYTES: lambda: self.stack.append(self._read(self._read(1)[0])),
            BINBYTES: lambda: self.stack.append(self._read(self._unpack("<I", 4))),
            BINBYTES8: lambda: self.stack.append(self._read(self._unpack("<Q", 8))),
            BYTEARRAY8: lambda: self.stack.append(bytearray(self._read(self._unpack("<Q", 8)))),
            EMPTY_TUPLE: lambda: self.stack.append(()),
            TUPLE1: lambda: self._tuple_n(1),
            TUPLE2: lambda: self._tuple_n(2),
            TUPLE3: lambda: self._tuple_n(3),
            TUPLE: lambda: self.stack.append(tuple(self._pop_mark())),
            EMPTY_LIST: lambda: self.stack.append([]),
            APPEND: self._append,
            APPENDS: self._appends,
            LIST: lambda: self.stack.append(list(self._pop_mark())),
            EMPTY_DICT: lambda: self.stack.append({}),
            DICT: self._dict,
            SETITEM: self._setitem,
            SETITEMS: self._setitems,
            EMPTY_SET: lambda: self.stack.append(set()),
            ADDITEMS: self._additems,
            FROZENSET: lambda: self.stack.append(frozenset(self._pop_mark())),
            MARK: self._mark,
            POP: self._pop_op,
            POP_MARK: self._pop_mark,
            DUP: lambda: self.stack.append(self._top()),
            PUT: lambda: self._put(int(self._readline())),
            BINPUT: lambda: self._put(self._read(1)[0]),
            LONG_BINPUT: lambda: self._put(self._unpack("<I", 4)),
            MEMOIZE: lambda: self._put(len(self.memo)),
            GET: lambda: self._get(int(self._readline())),
            BINGET: lambda: self._get(self._read(1)[0]),
            LONG_BINGET: lambda: self._get(self._unpack("<I", 4)),
            GLOBAL: self._global,
            STACK_GLOBAL: self._stack_global,
            REDUCE: self._reduce,
            BUILD: self._build,
            NEWOBJ: self._newobj,
            NEWOBJ_EX: self._newobj_ex,
            BINPERSID: self._binpersid,
        }

    # ------------------------------------------------------------------ driver
    def load(self) -> Any:
        """Run the stream to STOP and return the top-level value."""
        n = len(self.data)
        while True:
            if self.pos >= n:
                raise PickleError(f"stream ended without STOP at offset {self.pos}")
            self._op_pos = self.pos
            self._op = self.data[self.pos]
            self.pos += 1
            handler = self.dispatch.get(self._op)
            if handler is None:
                raise PickleError(f"unsupported pickle opcode 0x{self._op:02X} at offset {self._op_pos}")
            try:
                handler()
            except _Stop as stop:
                return stop.value
            except (AttributeError, IndexError, KeyError, TypeError, ValueError, struct.error) as e:
                raise PickleError(
                    f"malformed stream at opcode 0x{self._op:02X}, offset {self._op_pos}: {e}"
                ) from e

    # -------------------------------------------------------------- reading
    def _read(self, n: int) -> bytes:
        end = self.pos + n
        if n < 0 or end > len(self.data):
            raise PickleError(
                f"truncated stream: opcode 0x{self._op:02X} at offset {self._op_pos} "
                f"needs {n} bytes, {len(self.data) - self.pos} left"
            )
        out = bytes(self.data[self.pos:end])
        self.pos = end
        return out

    def _unpack(self, fmt: str, size: int):
        return struct.unpack(fmt, self._read(size))[0]

    def _readline(self) -> bytes:
        end = bytes(self.data[self.pos:]).find(b"\n")
        if end < 0:
            raise PickleError(
                f"truncated stream: opcode 0x{self._op:02X} at offset {self._op_pos} missing newline"
            )
        line = bytes(self.data[self.pos:self.pos + end])
        self.pos += end + 1
        return line.rstrip(b"\r")

    def _read_str(self, n: int) -> str:
        return self._read(n).decode("utf-8", "surrogatepass")

    def _read_long(self, n: int) -> int:
        if n == 0:
            return 0
        return int.from_bytes(self._read(n), "little", signed=True)

    # ------------------------------------------------------------- stack ops
    def _top(self):
        if not self.stack:
            raise PickleError(f"stack underflow at opcode 0x{self._op:02X}, offset {self._op_pos}")
        return self.stack[-1]

    def _pop(self):
        if not self.stack:
            raise PickleError(f"stack underflow at opcode 0x{self._op:02X}, offset {self._op_pos}")
        return self.stack.pop()

    def _pop_op(self):
        if self.stack:
            self.stack.pop()
        else:
            self._pop_mark()

    def _mark(self):
        self.metastack.append(self.stack)
        self.stack = []

    def _pop_mark(self) -> List[Any]:
        if not self.metastack:
            raise PickleError(f"no MARK on stack at opcode 0x{self._op:02X}, offset {self._op_pos}")
        items = self.stack
        self.stack = self.metastack.pop()
        return items

    def _tuple_n(self, n: int):
        if len(self.stack) < n:
            raise PickleError(f"stack underflow at opcode 0x{self._op:02X}, offset {self._op_pos}")
        items = tuple(self.stack[-n:])
        del self.stack[-n:]
        self.stack.append(items)

    def _put(self, idx: int):
        self.memo[idx] = self._top()

    def _get(self, idx: int):
        if idx not in self.memo:
            raise PickleError(f"memo key {idx} not found at offset {self._op_pos}")
        self.stack.append(self.memo[idx])

    # ------------------------------------------------------------ opcodes
    def _proto(self):
        proto = self._read(1)[0]
        if proto > 5:
            raise PickleError(f"unsupported pickle protocol {proto} at offset {self._op_pos}")

    def _frame(self):
        self._read(8)  # frame length; frames are read inline

    def _stop(self):
        raise _Stop(self._pop())

    def _int(self):
        line = self._readline()
        if line == b"00":
            self.stack.append(False)
        elif line == b"01":
            self.stack.append(True)
        else:
            self.stack.append(int(line))

    def _long(self):
        self.stack.append(int(self._readline().rstrip(b"L")))

    def _append(self):
        value = self._pop()
        self._top().append(value)

    def _appends(self):
        items = self._pop_mark()
        target = self._top()
        if isinstance(target, list):
            target.extend(items)
        elif isinstance(target, PythonObject):
            target.args.extend(items)
        else:
            raise PickleError(f"APPENDS on {type(target).__name__} at offset {self._op_pos}")

    def _dict(self):
        items = self._pop_mark()
        self.stack.append({items[i]: items[i + 1] for i in range(0, len(items), 2)})

    def _setitem(self):
        value = self._pop()
        key = self._pop()
        self._top()[key] = value

    def _setitems(self):
        items = self._pop_mark()
        target = self._top()
        for i in range(0, len(items), 2):
            target[items[i]] = items[i + 1]

    def _additems(self):
        items = self._pop_mark()
        self._top().update(items)

    def _global(self):
        module = self._readline().decode("utf-8")
        name = self._readline().decode("utf-8")
        self.stack.append(PythonGlobal(module, name))

    def _stack_global(self):
        name = self._pop()
        module = self._pop()
        if not isinstance(module, str) or not isinstance(name, str):
            raise PickleError(f"STACK_GLOBAL expects two strings at offset {self._op_pos}")
        self.stack.append(PythonGlobal(module, name))

    def _reduce(self):
        args = self._pop()
        func = self._pop()
        self.stack.append(self.reduce(func, tuple(args) if isinstance(args, (list, tuple)) else (args,)))

    def _build(self):
        state = self._pop()
        obj = self._top()
        if isinstance(obj, PythonObject):
            obj.state = state
        elif isinstance(obj, dict) and isinstance(state, dict):
            obj.update(state)
        # other targets (tensors, containers) carry no state we need

    def _newobj(self):
        args = self._pop()
        cls = self._pop()
        self.stack.append(self.new_object(cls, tuple(args)))

    def _newobj_ex(self):
        self._pop()  # kwargs
        args = self._pop()
        cls = self._pop()
        self.stack.append(self.new_object(cls, tuple(args)))

    def _binpersid(self):
        pid = self._pop()
        if self._persistent_load is not None:
            self.stack.append(self._persistent_load(pid))
        else:
            self.stack.append(PythonObject(PythonGlobal("_persistent", "load"), [pid]))

    # ------------------------------------------------------------- hooks
    def new_object(self, cls: Any, args: tuple) -> Any:
        if isinstance(cls, PythonGlobal) and (cls.module, cls.name) in DICT_TYPES:
            return {}
        if not isinstance(cls, PythonGlobal):
            cls = PythonGlobal("?", "?")
        return PythonObject(cls, list(args))

    def reduce(self, func: Any, args: tuple) -> Any:
        """Apply `func(*args)` symbolically. Override to rebuild real objects."""
        if isinstance(func, PythonGlobal):
            if (func.module, func.name) in DICT_TYPES:
                out = {}
                if args and isinstance(args[0], (list, tuple)):
                    out.update(item for item in args[0] if isinstance(item, (list, tuple)))
                return out
            ctor = CONTAINER_TYPES.get((func.module, func.name))
            if ctor is not None:
                return ctor(*args[:1])
            if func.full_name == "_codecs.encode" and args and isinstance(args[0], str):
                # protocol 2 bytes: encode(text, "latin1")
                return args[0].encode(args[1] if len(args) > 1 else "utf-8")
            if func.full_name == "copyreg._reconstructor" and args and isinstance(args[0], PythonGlobal):
                return PythonObject(args[0])
            return PythonObject(func, list(args))
        return PythonObject(PythonGlobal("?", "?"), list(args))

def loads(data: bytes, persistent_load: Optional[Callable[[Any], Any]] = None) -> Any:
    """Shortcut for `PickleReader(data, persistent_load).load()`."""
    return PickleReader(data, persistent_load).load()
