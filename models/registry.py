"""
Version-keyed registry of detection networks and their losses.

    model = create_model("v8", num_classes=3, variant="s")
    loss = create_loss("v8", model, cfg)
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

import torch
import torch.nn as nn

@dataclass
class ModelRegistration:
    factory: Callable[..., nn.Module]  # (num_classes, variant, **kwargs) -> model
    variants: Sequence[str]
    loss_factory: Optional[Callable[..., nn.Module]] = None  # (model, cfg) -> loss

_REGISTRY: Dict[str, ModelRegistration] = {}

def _key(version: str) -> str:
    return str(version).lower()

def register_model(version: str, factory: Callable[..., nn.Module], variants: Sequence[str]):
    """Register (or replace) a model family under `version`."""
    prev = _REGISTRY.get(_key(version))
    _REGISTRY[_key(version)] = ModelRegistration(
        factory, tuple(variants), prev.loss_factory if prev else None
    )

def register_loss(version: str, factory: Callable[..., nn.Module]):
    """Attach a loss factory to an already registered version."""
    if _key(version) not in _REGISTRY:
        raise KeyError(f"cannot register a loss for unknown model version {version!r}")
    _REGISTRY[_key(version)].loss_factory = factory

def _get(version: str) -> ModelRegistration:
    if _key(version) not in _REGISTRY:
        raise KeyError(f"unknown model version {version!r}; available: {available_versions()}")
    return _REGISTRY[_key(version)]

def available_versions():
    return sorted(_REGISTRY)

def variants(version: str):
    return tuple(_get(version).variants)

def create_model(
    version: str,
    num_classes: int,
    variant: str = "n",
    device: Optional[torch.device] = None,
    **kwargs,
) -> nn.Module:
    reg = _get(version)
    if variant not in reg.variants:
        raise ValueError(f"model {version!r} has no variant {variant!r}; expected one of {list(reg.variants)}")
    model = reg.factory(num_classes, variant, **kwargs)
    if device is not None:
        model = model.to(device)
    return model

def create_loss(version: str, model: nn.Module, cfg=None) -> nn.Module:
    reg = _get(version)
    if reg.loss_factory is None:
        raise KeyError(f"no loss registered for model version {version!r}")
    return reg.loss_factory(model, cfg)

def _v8_model(nc, variant, **kwargs):
    from models.v8.model import YOLOv8
    return YOLOv8(nc=nc, variant=variant, **kwargs)

def _v8_loss(model, cfg=None):
    # deferred: utils.loss pulls in core.config, which imports the trainer
    from utils.loss import DetectionLoss
    return DetectionLoss(model, cfg)

register_model("v8", _v8_model, ("n", "s", "m", "l", "x"))
register_loss("v8", _v8_loss)
