import torch
import torch.nn as nn
from pathlib import Path
from typing import Dict, Any, Optional, Union
from dataclasses import dataclass, field

from utils.ema import de_parallel
from utils.logging import get_logger

@dataclass
class TrainingState:
    epoch: int = 0
    opt_step: int = 0  # increments on successful optimizer updates
    global_step: int = 0  # increments every batch
    last_opt_step: int = -1  # global_step of the last optimizer update
    best_fitness: Optional[float] = None
    best_epoch: int = -1
    patience_counter: int = 0
    metrics: Dict[str, float] = field(default_factory=dict)

def select_device(device: Union[str, torch.device, None] = None) -> torch.device:
    """None/"" -> cuda when available else cpu; "cuda" falls back to cpu without a GPU."""
    if device is None or str(device) == "":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    device = torch.device(device)
    if device.type == "cuda" and not torch.cuda.is_available():
        get_logger().warning("runner/device", "CUDA requested but unavailable; using cpu")
        return torch.device("cpu")
    return device

def _clean_keys(sd: dict) -> dict:
    cleaned = {}
    for k, v in sd.items():
        nk = k
        if nk.startswith("_orig_mod."):
            nk = nk[len("_orig_mod."):]
        if nk.startswith("module."):
            nk = nk[len("module."):]
        cleaned[nk] = v
    return cleaned

class BaseRunner:
    def __init__(
        self,
        model: nn.Module,
        device: Union[str, torch.device, None] = None,
        cfg: Optional[Dict[str, Any]] = None,
    ):
        self.device = select_device(device)
        self.model = model.to(self.device)
        self.cfg = cfg or {}
        self.logger = get_logger()
        self.state = TrainingState()

    def preprocess(self, batch):
        if isinstance(batch, torch.Tensor):
            return batch.to(self.device, non_blocking=True)
        if isinstance(batch, dict):
            return {k: self.preprocess(v) for k, v in batch.items()}
        if isinstance(batch, (list, tuple)):
            return type(batch)(self.preprocess(x) for x in batch)
        return batch

    def save_checkpoint(self, path: Path, model_state: Optional[Dict[str, torch.Tensor]] = None, **kwargs):
        """
        Save model weights plus training state.

        Args:
            path: destination .pt
            model_state: state dict to store under "model" (defaults to the live model)
            **kwargs: optimizer, ema, epoch, best_fitness
        """
        if model_state is None:
            model_state = de_parallel(self.model).state_dict()
        ckpt = {
            "model": {k: v.detach().cpu() for k, v in model_state.items()},
            "cfg": dict(self.cfg),
        }
        if kwargs.get("optimizer") is not None:
            ckpt["optimizer"] = kwargs["optimizer"].state_dict()
        if kwargs.get("ema") is not None:
            ckpt["ema"] = {k: v.detach().cpu() for k, v in kwargs["ema"].state_dict().items()}
            ckpt["ema_updates"] = kwargs["ema"].updates
        for key in ("epoch", "best_fitness"):
            if key in kwargs:
                ckpt[key] = kwargs[key]
        ckpt["opt_step"] = int(self.state.opt_step)

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(ckpt, path)
        return path

    def load_checkpoint(self, path: Path, strict: bool = True):
        """Load a checkpoint written by save_checkpoint into the live model; returns the payload."""
        ckpt = torch.load(path, map_location=self.device, weights_only=False)
        model_sd = _clean_keys(ckpt.get("model", ckpt))
        de_parallel(self.model).load_state_dict(model_sd, strict=strict)
        if "opt_step" in ckpt:
            self.state.opt_step = int(ckpt["opt_step"])
        return ckpt
