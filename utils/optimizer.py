import json
import math
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn
from torch.optim import Optimizer

from utils.logging import get_logger

def _norm_types():
    """Normalization layer classes whose weights are excluded from weight decay."""
    mods = []
    for name in (
        "BatchNorm1d",
        "BatchNorm2d",
        "BatchNorm3d",
        "InstanceNorm1d",
        "InstanceNorm2d",
        "InstanceNorm3d",
        "GroupNorm",
        "LayerNorm",
        "LocalResponseNorm",
        "SyncBatchNorm",
    ):
        if hasattr(nn, name):
            mods.append(getattr(nn, name))
    return tuple(mods)

def build_param_groups(model: nn.Module) -> Tuple[List, List, List]:
    """
    Split trainable parameters into (norm weights, other weights, biases).

    Each parameter lands in exactly one list; parameters shared between
    modules are counted once.
    """
    g_norm, g_weight, g_bias = [], [], []
    seen = set()
    norm_t = _norm_types()
    for module in model.modules():
        for pname, p in module.named_parameters(recurse=False):
            if not p.requires_grad or id(p) in seen:
                continue
            seen.add(id(p))
            if pname == "bias":
                g_bias.append(p)
            elif isinstance(module, norm_t):
                g_norm.append(p)
            else:
                g_weight.append(p)
    return g_norm, g_weight, g_bias

def resolve_optimizer(
    name: str,
    lr0: float,
    momentum: float,
    num_classes: int,
    total_iterations: int,
) -> Tuple[str, float, float]:
    """
    Resolve "auto" to a concrete optimizer: SGD for long schedules
    (more than 10k iterations), otherwise AdamW with a class-count fitted LR.
    """
    if name.lower() != "auto":
        return name, float(lr0), float(momentum)
    if total_iterations > 10000:
        return "SGD", 0.01, 0.9
    return "AdamW", round(0.002 * 5 / (4 + num_classes), 6), 0.9

def build_optimizer(
    model: nn.Module,
    name: str = "auto",
    lr0: float = 0.01,
    momentum: float = 0.937,
    weight_decay: float = 0.0005,
    batch_size: int = 16,
    accumulate: int = 1,
    nominal_batch: int = 64,
    num_classes: int = 80,
    total_iterations: int = 0,
) -> Optimizer:
    """
    Build SGD/Adam/AdamW with three named groups:
      norm_weights (no decay), weights (decay scaled by effective batch), biases (no decay).
    """
    logger = get_logger()
    name, lr, momentum = resolve_optimizer(name, lr0, momentum, num_classes, total_iterations)
    decay = float(weight_decay) * batch_size * accumulate / nominal_batch
    g_norm, g_weight, g_bias = build_param_groups(model)

    key = name.lower()
    if key == "sgd":
        optimizer = torch.optim.SGD(
            [{"params": g_bias, "name": "biases"}], lr=lr, momentum=momentum, nesterov=momentum > 0
        )
    elif key == "adam":
        optimizer = torch.optim.Adam(
            [{"params": g_bias, "name": "biases"}], lr=lr, betas=(momentum, 0.999), weight_decay=0.0
        )
    elif key == "adamw":
        optimizer = torch.optim.AdamW(
            [{"params": g_bias, "name": "biases"}], lr=lr, betas=(momentum, 0.999), weight_decay=0.0
        )
    else:
        raise ValueError(f"Unknown optimizer: {name}. Use SGD, AdamW, Adam, or auto.")

    optimizer.add_param_group({"params": g_norm, "weight_decay": 0.0, "name": "norm_weights"})
    optimizer.add_param_group({"params": g_weight, "weight_decay": decay, "name": "weights"})
    for g in optimizer.param_groups:
        g.setdefault("weight_decay", 0.0)
        g["initial_lr"] = lr
        g["initial_momentum"] = momentum

    logger.log_text(
        "config/optimizer",
        json.dumps({
            "type": name,
            "lr0": lr,
            "momentum": momentum,
            "weight_decay": decay,
            "groups": {g["name"]: len(g["params"]) for g in optimizer.param_groups},
        },
                   indent=2)
    )
    logger.info(
        "optimizer/build",
        f"{name}(lr={lr}, momentum={momentum}) with parameter groups "
        f"{len(g_norm)} weight(decay=0.0), {len(g_weight)} weight(decay={decay}), "
        f"{len(g_bias)} bias(decay=0.0)"
    )
    return optimizer

def lr_lambda(epochs: int, lrf: float, cos_lr: bool = False):
    """LR multiplier per epoch: 1.0 at epoch 0 down to lrf at the last epoch."""
    span = max(1, int(epochs) - 1)
    if cos_lr:
        return lambda e: ((1 - math.cos(e * math.pi / span)) / 2) * (lrf - 1) + 1
    return lambda e: (1 - e / span) * (1.0 - lrf) + lrf

class WarmupScheduler:
    """
    Per-iteration LR and momentum schedule.

    Warmup over the first `warmup_iters` iterations: the bias group ramps
    from warmup_bias_lr and the other groups from 0 to initial_lr * lf(epoch);
    momentum (Adam beta1) ramps from warmup_momentum to momentum.
    Afterwards every group runs at initial_lr * lf(epoch).
    """
    def __init__(
        self,
        optimizer: Optimizer,
        epochs: int,
        batches_per_epoch: int,
        lrf: float = 0.01,
        cos_lr: bool = False,
        warmup_epochs: float = 3.0,
        warmup_bias_lr: float = 0.1,
        warmup_momentum: float = 0.8,
        momentum: float = 0.937,
    ):
        self.optimizer = optimizer
        self.lf = lr_lambda(epochs, lrf, cos_lr)
        self.warmup_bias_lr = float(warmup_bias_lr)
        self.warmup_momentum = float(warmup_momentum)
        self.momentum = float(momentum)
        self.warmup_iters = (
            max(round(warmup_epochs * batches_per_epoch), 100) if warmup_epochs > 0 else 0
        )
        self.last_epoch = 0
        self.last_iter = -1

    def _set_momentum(self, group: Dict[str, Any], value: float):
        if "momentum" in group:
            group["momentum"] = value
        elif "betas" in group:
            group["betas"] = (value, group["betas"][1])

    def step(self, epoch: int, iteration: int):
        """Set LR/momentum for global `iteration` (0-based) within `epoch`."""
        self.last_epoch, self.last_iter = int(epoch), int(iteration)
        factor = self.lf(epoch)
        if iteration <= self.warmup_iters and self.warmup_iters > 0:
            xi = [0, self.warmup_iters]
            for g in self.optimizer.param_groups:
                start = self.warmup_bias_lr if g.get("name") == "biases" else 0.0
                g["lr"] = float(np.interp(iteration, xi, [start, g["initial_lr"] * factor]))
                target_m = g.get("initial_momentum", self.momentum)
                self._set_momentum(
                    g, float(np.interp(iteration, xi, [self.warmup_momentum, target_m]))
                )
        else:
            for g in self.optimizer.param_groups:
                g["lr"] = g["initial_lr"] * factor

    def get_last_lr(self) -> List[float]:
        return [g["lr"] for g in self.optimizer.param_groups]

    def state_dict(self) -> Dict[str, int]:
        return {"last_epoch": self.last_epoch, "last_iter": self.last_iter}

    def load_state_dict(self, state: Dict[str, int]):
        self.last_epoch = int(state.get("last_epoch", 0))
        self.last_iter = int(state.get("last_iter", -1))

def print_optimizer_info(optimizer: Optimizer, scheduler: Optional[WarmupScheduler] = None):
    logger = get_logger()
    info = {}
    for i, group in enumerate(optimizer.param_groups):
        name = group.get("name", f"group_{i}")
        info[name] = {
            "params": sum(p.numel() for p in group["params"]),
            "lr": group["lr"],
            "weight_decay": group.get("weight_decay", 0.0),
        }
    if scheduler is not None:
        info["warmup_iters"] = scheduler.warmup_iters
    logger.debug("optimizer/summary", info)
