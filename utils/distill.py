"""
Teacher -> student knowledge distillation for detection.

Both networks see the same images, so their anchor sets line up one to one.
Modes:
  logit   : KL of temperature-softened class distributions (x T^2) plus MSE of
            the box-bin logits on anchors the teacher is confident about
  feature : MSE of L2-normalized neck features after 1x1 student->teacher adapters
  both    : sum of the two
"""
from typing import Optional, Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F

from utils.logging import get_logger

DISTILL_MODES = ("logit", "feature", "both")

class DistillationLoss(nn.Module):
    def __init__(
        self,
        temperature: float = 20.0,
        mode: str = "logit",
        cls_weight: float = 1.0,
        box_weight: float = 1.0,
        feat_weight: float = 1.0,
        student_channels: Optional[Sequence[int]] = None,
        teacher_channels: Optional[Sequence[int]] = None,
        conf_thresh: float = 0.1,
    ):
        super().__init__()
        mode = str(mode).lower()
        if mode not in DISTILL_MODES:
            raise ValueError(f"distill mode must be one of {DISTILL_MODES}, got {mode!r}")
        self.temperature = float(temperature)
        self.mode = mode
        self.cls_weight = float(cls_weight)
        self.box_weight = float(box_weight)
        self.feat_weight = float(feat_weight)
        self.conf_thresh = float(conf_thresh)
        self.adapters = None
        if self.use_features:
            if student_channels is None or teacher_channels is None:
                raise ValueError(f"distill mode {mode!r} needs student and teacher feature channels")
            self.adapters = nn.ModuleList(
                self._adapter(int(cs), int(ct)) for cs, ct in zip(student_channels, teacher_channels)
            )

    @property
    def use_logits(self) -> bool:
        return self.mode in ("logit", "both")

    @property
    def use_features(self) -> bool:
        return self.mode in ("feature", "both")

    @staticmethod
    def _adapter(cs: int, ct: int) -> nn.Conv2d:
        conv = nn.Conv2d(cs, ct, 1, bias=False)
        if cs == ct:
            with torch.no_grad():
                conv.weight.zero_()
                idx = torch.arange(cs)
                conv.weight[idx, idx, 0, 0] = 1.0
        return conv

    def logit_loss(self, s_box, s_cls, t_box, t_cls) -> torch.Tensor:
        B, _, N = s_cls.shape
        T = self.temperature
        s_log = F.log_softmax(s_cls.permute(0, 2, 1) / T, dim=-1)
        t_prob = F.softmax(t_cls.permute(0, 2, 1) / T, dim=-1)
        kl = F.kl_div(s_log, t_prob, reduction="sum") / (B * N)
        cls_loss = kl * (T * T) * self.cls_weight

        fg = t_cls.sigmoid().amax(1) > self.conf_thresh  # (B,N)
        n_fg = int(fg.sum())
        if n_fg:
            diff = (s_box - t_box).pow(2).permute(0, 2, 1)  # (B,N,4*bins)
            box_loss = (diff * fg.unsqueeze(-1).to(diff.dtype)).sum() / n_fg * self.box_weight
        else:
            box_loss = torch.zeros((), device=s_box.device, dtype=s_box.dtype)
        return cls_loss + box_loss

    def feature_loss(self, s_feats, t_feats) -> torch.Tensor:
        total = torch.zeros((), device=s_feats[0].device, dtype=s_feats[0].dtype)
        for adapter, s, t in zip(self.adapters, s_feats, t_feats):
            s = F.normalize(adapter(s).flatten(2), dim=-1)
            t = F.normalize(t.flatten(2), dim=-1)
            total = total + F.mse_loss(s, t)
        return total * self.feat_weight

    def forward(self, s_box, s_cls, t_box, t_cls, s_feats=None, t_feats=None):
        """Returns (loss, detached loss)."""
        t_box, t_cls = t_box.detach(), t_cls.detach()
        loss = torch.zeros((), device=s_box.device, dtype=s_box.dtype)
        if self.use_logits:
            loss = loss + self.logit_loss(s_box, s_cls, t_box, t_cls)
        if self.use_features:
            if s_feats is None or t_feats is None:
                raise ValueError("feature distillation needs student and teacher features")
            loss = loss + self.feature_loss(s_feats, [t.detach() for t in t_feats])
        return loss, loss.detach()

def freeze_teacher(teacher: nn.Module) -> nn.Module:
    """Eval mode, no gradients."""
    teacher.eval()
    for p in teacher.parameters():
        p.requires_grad_(False)
    get_logger().info(
        "distill/teacher", f"{sum(p.numel() for p in teacher.parameters()):,} frozen parameters"
    )
    return teacher
