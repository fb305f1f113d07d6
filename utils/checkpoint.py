"""
Reader for torch `.pt` archives that never executes pickled code.

A `.pt` file written by `torch.save` is a zip with `<prefix>data.pkl` (the
pickled object graph) and one `<prefix>data/<key>` entry of raw
little-endian bytes per tensor storage. `read_checkpoint` walks either a
full training checkpoint (`{"model": nn.Module, ...}`) or a plain state dict
and returns a flat name -> tensor mapping.
"""
import zipfile
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import torch

from utils.logging import get_logger
from utils.pickle_reader import PickleReader, PythonGlobal, PythonObject

class CheckpointFormatError(Exception):
    """The file is not a readable torch zip archive."""

STORAGE_DTYPES = {
    "FloatStorage": torch.float32,
    "DoubleStorage": torch.float64,
    "HalfStorage": torch.float16,
    "BFloat16Storage": torch.bfloat16,
    "LongStorage": torch.int64,
    "IntStorage": torch.int32,
    "ShortStorage": torch.int16,
    "CharStorage": torch.int8,
    "ByteStorage": torch.uint8,
    "BoolStorage": torch.bool,
    "UntypedStorage": torch.uint8,
    # dtype globals used by some writers in place of a typed storage class
    "float32": torch.float32,
    "float": torch.float32,
    "float64": torch.float64,
    "double": torch.float64,
    "float16": torch.float16,
    "half": torch.float16,
    "bfloat16": torch.bfloat16,
    "int64": torch.int64,
    "long": torch.int64,
    "int32": torch.int32,
    "int": torch.int32,
    "int16": torch.int16,
    "short": torch.int16,
    "int8": torch.int8,
    "uint8": torch.uint8,
    "bool": torch.bool,
}

WIDENED_DTYPES = (torch.float16, torch.bfloat16)

class _StorageRef:
    """Lazily materialized flat storage from `<prefix>data/<key>`."""
    def __init__(self, archive: "_TorchArchive", key: str, dtype: torch.dtype, numel: int):
        self.archive = archive
        self.key = key
        self.dtype = dtype
        self.numel = int(numel)
        self._flat: Optional[torch.Tensor] = None

    def flat(self) -> torch.Tensor:
        if self._flat is None:
            raw = self.archive.read_storage(self.key)
            if len(raw) == 0:
                flat = torch.empty(0, dtype=self.dtype)
            else:
                flat = torch.frombuffer(bytearray(raw), dtype=self.dtype)
            if flat.numel() < self.numel:
                raise CheckpointFormatError(
                    f"storage {self.key!r} holds {flat.numel()} elements, expected {self.numel}"
                )
            self._flat = flat
        return self._flat

def _storage_dtype(storage_type: Any) -> torch.dtype:
    if isinstance(storage_type, PythonGlobal):
        name = storage_type.name
    elif isinstance(storage_type, PythonObject):
        name = storage_type.cls.name
    elif isinstance(storage_type, torch.dtype):
        return storage_type
    else:
        name = str(storage_type)
    if name not in STORAGE_DTYPES:
        raise CheckpointFormatError(f"unknown storage class {name!r}")
    return STORAGE_DTYPES[name]

class _TorchUnpickler(PickleReader):
    """PickleReader that rebuilds tensors from the archive's storages."""
    def __init__(self, data: bytes, archive: "_TorchArchive"):
        super().__init__(data, persistent_load=self._load_storage)
        self.archive = archive
        self.storages: Dict[str, _StorageRef] = {}

    def _load_storage(self, pid):
        if not isinstance(pid, tuple) or len(pid) < 5 or pid[0] != "storage":
            raise CheckpointFormatError(f"unsupported persistent id {pid!r}")
        _, storage_type, key, _location, numel = pid[:5]
        key = str(key)
        if key not in self.storages:
            self.storages[key] = _StorageRef(self.archive, key, _storage_dtype(storage_type), numel)
        return self.storages[key]

    def reduce(self, func, args):
        if isinstance(func, PythonGlobal):
            name = func.full_name
            if name in ("torch._utils._rebuild_tensor_v2", "torch._utils._rebuild_tensor"):
                return _rebuild_tensor(*args[:4])
            if name in ("torch._utils._rebuild_parameter", "torch._utils._rebuild_parameter_with_state"):
                return args[0]
            if name == "torch._tensor._rebuild_from_type_v2":
                return self.reduce(args[0], tuple(args[2]))
            if name == "torch.Size":
                return tuple(args[0]) if args else ()
        return super().reduce(func, args)

def _rebuild_tensor(storage, storage_offset, size, stride) -> torch.Tensor:
    if not isinstance(storage, _StorageRef):
        raise CheckpointFormatError(f"tensor references {storage!r}, not an archive storage")
    flat = storage.flat()
    t = torch.as_strided(flat, tuple(size), tuple(stride), int(storage_offset)).clone()
    if t.dtype in WIDENED_DTYPES:
        t = t.float()
    return t

class _TorchArchive:
    """Open zip plus the `<prefix>` that precedes `data.pkl`."""
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        if not zipfile.is_zipfile(self.path):
            raise CheckpointFormatError(f"{self.path} is not a zip archive")
        self.zf = zipfile.ZipFile(self.path)
        pkl = next((n for n in self.zf.namelist() if n.endswith("data.pkl")), None)
        if pkl is None:
            self.zf.close()
            raise CheckpointFormatError(f"{self.path} has no data.pkl entry")
        self.pkl_name = pkl
        self.prefix = pkl[:-len("data.pkl")]
        order = f"{self.prefix}byteorder"
        if order in self.zf.namelist() and self.zf.read(order).strip() not in (b"", b"little"):
            self.zf.close()
            raise CheckpointFormatError(f"{self.path} stores big-endian tensors")

    def read_pickle(self) -> bytes:
        return self.zf.read(self.pkl_name)

    def read_storage(self, key: str) -> bytes:
        name = f"{self.prefix}data/{key}"
        try:
            return self.zf.read(name)
        except KeyError as e:
            raise CheckpointFormatError(f"missing storage entry {name!r}") from e

    def close(self):
        self.zf.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

def _as_mapping(obj) -> Optional[Dict]:
    if isinstance(obj, dict):
        return obj
    if isinstance(obj, PythonObject) and isinstance(obj.state, dict):
        return obj.state
    if isinstance(obj, PythonObject) and obj.get_state("_parameters") is not None:
        return obj.state[0]
    return None

def _walk_module(obj, prefix: str, out: "OrderedDict[str, torch.Tensor]"):
    state = _as_mapping(obj)
    if state is None:
        return
    skip = set(state.get("_non_persistent_buffers_set") or ())
    for group in ("_parameters", "_buffers"):
        for name, value in (_as_mapping(state.get(group)) or {}).items():
            if isinstance(value, torch.Tensor) and not (group == "_buffers" and name in skip):
                out[f"{prefix}{name}"] = value
    for name, sub in (_as_mapping(state.get("_modules")) or {}).items():
        if sub is not None:
            _walk_module(sub, f"{prefix}{name}.", out)

def _walk_state_dict(obj: Dict, prefix: str, out: "OrderedDict[str, torch.Tensor]"):
    for key, value in obj.items():
        if isinstance(value, torch.Tensor):
            out[f"{prefix}{key}"] = value
        elif isinstance(value, dict) and key != "_metadata":
            _walk_state_dict(value, f"{prefix}{key}.", out)

def _is_module(obj) -> bool:
    state = _as_mapping(obj)
    return isinstance(obj, PythonObject) and state is not None and "_modules" in state

def extract_state_dict(root) -> "OrderedDict[str, torch.Tensor]":
    """Flatten an unpickled checkpoint root into name -> tensor."""
    out: "OrderedDict[str, torch.Tensor]" = OrderedDict()
    if isinstance(root, dict) and ("model" in root or "ema" in root):
        target = root.get("model")
        if target is None:
            target = root.get("ema")
        if _is_module(target):
            _walk_module(target, "", out)
        elif isinstance(target, dict):
            _walk_state_dict(target, "", out)
    elif _is_module(root):
        _walk_module(root, "", out)
    elif isinstance(root, dict):
        _walk_state_dict(root, "", out)
    else:
        raise CheckpointFormatError(f"unrecognized checkpoint root {type(root).__name__}")
    return out

def read_checkpoint(path: Union[str, Path]) -> "OrderedDict[str, torch.Tensor]":
    """
    Read a torch `.pt` archive into an ordered name -> float32/int tensor map.

    Half and bfloat16 tensors are widened to float32. Raises
    CheckpointFormatError for non-zip files, a missing data.pkl or storage
    entry, or an unknown storage class; PickleError for a bad pickle stream.
    """
    logger = get_logger()
    with _TorchArchive(path) as archive:
        root = _TorchUnpickler(archive.read_pickle(), archive).load()
        tensors = extract_state_dict(root)
    logger.debug("checkpoint/read", {"path": str(path), "tensors": len(tensors)})
    return tensors

def detect_format(path: Union[str, Path]) -> str:
    """'pytorch' for a zip with a data.pkl entry, otherwise 'unknown'."""
    path = Path(path)
    if not path.is_file() or not zipfile.is_zipfile(path):
        return "unknown"
    with zipfile.ZipFile(path) as zf:
        if any(n.endswith("data.pkl") for n in zf.namelist()):
            return "pytorch"
    return "unknown"
