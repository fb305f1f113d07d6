from copy import deepcopy
from typing import Dict
import math
import torch

def de_parallel(model):
    """De-parallelize a model, returning a single-GPU model."""
    model = getattr(model, '_orig_mod', model)
    return model.module if hasattr(model, 'module') else model

def snapshot_state(model) -> Dict[str, torch.Tensor]:
    """Detached copy of every parameter and buffer of `model`."""
    return {k: v.detach().clone() for k, v in de_parallel(model).state_dict().items()}

@torch.no_grad()
def restore_state(model, snapshot: Dict[str, torch.Tensor]):
    """Copy a snapshot taken with `snapshot_state` back into `model` in place."""
    for k, v in de_parallel(model).state_dict().items():
        v.copy_(snapshot[k])

class ModelEMA:
    """Exponential Moving Average of a model's parameters and buffers.

    Keeps a shadow of everything in the model state_dict. Floating entries are
    averaged with a decay that ramps up from 0; integer buffers are copied.

    To disable EMA set the `enabled` attribute to `False`.

    Attributes:
        ema (nn.Module): Copy of the model in evaluation mode.
        updates (int): Number of EMA updates.
        decay (function): Decay function that determines the EMA weight.
        enabled (bool): Whether EMA is enabled.

    References:
        - https://github.com/rwightman/pytorch-image-models
        - https://www.tensorflow.org/api_docs/python/tf/train/ExponentialMovingAverage
    """
    def __init__(self, model, decay=0.9999, tau=2000, updates=0):
        """Initialize EMA for 'model' with given arguments.

        Args:
            model (nn.Module): Model to create EMA for.
            decay (float, optional): Maximum EMA decay rate.
            tau (int, optional): EMA decay time constant.
            updates (int, optional): Initial number of updates.
        """
        self.ema = deepcopy(de_parallel(model)).eval()
        self.updates = updates  # number of EMA updates
        self.target_decay = float(decay)
        self.tau = float(tau)
        for p in self.ema.parameters():
            p.requires_grad_(False)
        self.enabled = True

    def decay(self, n: int) -> float:
        """Effective decay after n updates: decay * (1 - exp(-n / tau))."""
        return self.target_decay * (1 - math.exp(-n / self.tau))

    @torch.no_grad()
    def update(self, model):
        """Update EMA parameters.

        Args:
            model (nn.Module): Model to update EMA from.
        """
        if not self.enabled:
            return
        self.updates += 1
        d = self.decay(self.updates)

        msd = de_parallel(model).state_dict()  # model state_dict
        for k, v in self.ema.state_dict().items():
            if v.dtype.is_floating_point:
                v *= d
                v += (1 - d) * msd[k].detach().to(v.dtype)
            else:
                v.copy_(msd[k])

    @torch.no_grad()
    def apply_to(self, model):
        """Copy the shadow weights into `model` (caller snapshots and restores)."""
        restore_state(model, self.ema.state_dict())

    def state_dict(self):
        return self.ema.state_dict()
