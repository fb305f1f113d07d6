import os
import random
import yaml
import numpy as np
import torch
from pathlib import Path
from contextlib import contextmanager

def autopad(k, p=None, d=1):
    if d > 1:
        k = d * (k - 1) + 1 if isinstance(k, int) else [d * (x - 1) + 1 for x in k]
    if p is None:
        p = k // 2 if isinstance(k, int) else [x // 2 for x in k]
    return p

def make_divisible(x, divisor=8):
    return int(np.ceil(x / divisor) * divisor)

def load_yaml(path):
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}

def save_yaml(path, data: dict):
    """Write a flat mapping as block-style YAML, keys in insertion order."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)

def set_seed(seed: int = 0):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

def count_parameters(model: torch.nn.Module) -> int:
    return sum(p.numel() for p in model.parameters())

@contextmanager
def suppress_stderr_fd():
    """
    Context manager that silences C/C++ level writes to stderr by redirecting
    file descriptor 2 to os.devnull. Used around the TensorBoard import, which
    prints backend probing noise before logging is configured.
    """
    devnull_fd = os.open(os.devnull, os.O_WRONLY)
    saved_stderr_fd = os.dup(2)
    try:
        os.dup2(devnull_fd, 2)
        yield
    finally:
        os.dup2(saved_stderr_fd, 2)
        os.close(saved_stderr_fd)
        os.close(devnull_fd)
