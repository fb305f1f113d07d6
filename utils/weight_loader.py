"""
Load upstream YOLOv8 checkpoints into the local v8 network.

Upstream checkpoints name layers by their index in the model graph
("model.12.cv1.conv.weight"); the local network uses attribute names
("n_c2f1.cv1.conv.weight"). WEIGHT_MAP is the single source of truth for the
translation in both directions.
"""
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import torch
import torch.nn as nn

from utils.checkpoint import read_checkpoint
from utils.logging import get_logger

class WeightLoadError(Exception):
    """Strict loading found unmapped, missing or mismatched keys."""

# upstream layer index -> local attribute prefix.
# 10, 11, 13, 14, 17, 20 are Upsample/Concat and carry no parameters.
WEIGHT_MAP: Dict[int, str] = {
    0: "b0",
    1: "b1",
    2: "b2",
    3: "b3",
    4: "b4",
    5: "b5",
    6: "b6",
    7: "b7",
    8: "b8",
    9: "b9",
    12: "n_c2f1",
    15: "n_c2f2",
    16: "n_down1",
    18: "n_c2f3",
    19: "n_down2",
    21: "n_c2f4",
    22: "detect",
}
INVERSE_WEIGHT_MAP: Dict[str, int] = {v: k for k, v in WEIGHT_MAP.items()}
DETECT_LAYER = 22

_UPSTREAM_KEY = re.compile(r"^model\.(\d+)\.(.+)$")
_HEAD_KEY = re.compile(r"^(cv[23])\.(\d+)\.(\d+)(?:\.(.*))?$")
_LOCAL_HEAD_KEY = re.compile(r"^(cv[23])\.(\d+)\.(cv[23])_(\d+)_(\d+)(?:\.(.*))?$")

def _join(*parts: Optional[str]) -> str:
    return ".".join(p for p in parts if p)

def remap_key(key: str) -> Optional[str]:
    """
    Upstream name -> local name, or None when the key has no local counterpart.

    "model.0.conv.weight"          -> "b0.conv.weight"
    "model.22.cv2.0.1.conv.weight" -> "detect.cv2.0.cv2_0_1.conv.weight"
    "model.22.dfl.conv.weight"     -> "detect.dfl.conv.weight"
    Keys that already use local names are returned unchanged.
    """
    m = _UPSTREAM_KEY.match(key)
    if m is None:
        head = key.split(".", 1)[0]
        return key if head in INVERSE_WEIGHT_MAP else None
    layer, rest = int(m.group(1)), m.group(2)
    prefix = WEIGHT_MAP.get(layer)
    if prefix is None:
        return None
    if layer == DETECT_LAYER:
        h = _HEAD_KEY.match(rest)
        if h is not None:
            branch, level, idx, tail = h.groups()
            rest = _join(branch, level, f"{branch}_{level}_{idx}", tail)
    return f"{prefix}.{rest}"

def inverse_remap_key(key: str) -> Optional[str]:
    """Local name -> upstream name (inverse of `remap_key`)."""
    head, _, rest = key.partition(".")
    layer = INVERSE_WEIGHT_MAP.get(head)
    if layer is None or not rest:
        return None
    if layer == DETECT_LAYER:
        h = _LOCAL_HEAD_KEY.match(rest)
        if h is not None:
            branch, level, _, _, idx, tail = h.groups()
            rest = _join(branch, level, idx, tail)
    return f"model.{layer}.{rest}"

@dataclass
class LoadResult:
    loaded: int = 0
    skipped: int = 0
    missing: int = 0
    unmapped_keys: List[str] = field(default_factory=list)
    missing_keys: List[str] = field(default_factory=list)
    mismatched_keys: List[str] = field(default_factory=list)

    @property
    def is_fully_loaded(self) -> bool:
        return self.missing == 0 and self.skipped == 0

def load_weights(
    model: nn.Module,
    source: Union[str, Path, Mapping[str, torch.Tensor]],
    strict: bool = False,
) -> LoadResult:
    """
    Copy tensors from an upstream checkpoint (path or name -> tensor map) into `model`.

    Shape mismatches are skipped with a warning; dtypes are coerced to the
    target's. With strict=True any unmapped, missing or mismatched key raises
    WeightLoadError before the model is modified.
    """
    logger = get_logger()
    if isinstance(source, (str, Path)):
        logger.info("weights/load", f"reading {source}")
        tensors = read_checkpoint(source)
    else:
        tensors = OrderedDict(source)

    remapped: "OrderedDict[str, torch.Tensor]" = OrderedDict()
    source_names: Dict[str, str] = {}
    result = LoadResult()
    for key, tensor in tensors.items():
        local = remap_key(key)
        if local is None:
            result.unmapped_keys.append(key)
        else:
            remapped[local] = tensor
            source_names[local] = key

    targets: Dict[str, torch.Tensor] = dict(model.named_parameters())
    targets.update(dict(model.named_buffers()))
    params = {name for name, _ in model.named_parameters()}

    plan = []
    for key, tensor in remapped.items():
        target = targets.get(key)
        if target is None:
            # remaps cleanly but names nothing in the model
            result.unmapped_keys.append(source_names[key])
            continue
        if tuple(target.shape) != tuple(tensor.shape):
            logger.warning(
                "weights/shape",
                f"shape mismatch for {key}: model={list(target.shape)}, "
                f"checkpoint={list(tensor.shape)}; skipping"
            )
            result.mismatched_keys.append(key)
            result.skipped += 1
            continue
        plan.append((target, tensor))

    result.missing_keys = [name for name in params if name not in remapped]
    result.missing = len(result.missing_keys)

    if strict and (result.unmapped_keys or result.missing_keys or result.mismatched_keys):
        raise WeightLoadError(
            f"strict load failed: {len(result.unmapped_keys)} unmapped, "
            f"{result.missing} missing, {len(result.mismatched_keys)} mismatched "
            f"(e.g. {(result.unmapped_keys + result.missing_keys + result.mismatched_keys)[:5]})"
        )

    with torch.no_grad():
        for target, tensor in plan:
            target.copy_(tensor.to(device=target.device, dtype=target.dtype))
    result.loaded = len(plan)

    logger.info(
        "weights/load",
        {
            "loaded": result.loaded,
            "skipped": result.skipped,
            "missing": result.missing,
            "unmapped": len(result.unmapped_keys),
        },
    )
    if 0 < result.missing <= 10:
        logger.info("weights/missing", ", ".join(result.missing_keys))
    return result
