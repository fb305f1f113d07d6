import math
from collections import OrderedDict

import torch
import torch.nn as nn

from utils.geometry import DFLDecoder
from utils.helpers import autopad

class Conv(nn.Module):
    """Conv2d + BatchNorm2d + SiLU."""
    default_act = nn.SiLU()

    def __init__(self, c1, c2, k=1, s=1, p=None, g=1, d=1, act=True):
        super().__init__()
        self.conv = nn.Conv2d(c1, c2, k, s, autopad(k, p, d), groups=g, dilation=d, bias=False)
        self.bn = nn.BatchNorm2d(c2, eps=1e-3, momentum=0.03)
        self.act = self.default_act if act is True else act if isinstance(act, nn.Module
                                                                         ) else nn.Identity()

    def forward(self, x):
        return self.act(self.bn(self.conv(x)))

class Bottleneck(nn.Module):
    """Standard bottleneck."""
    def __init__(self, c1, c2, shortcut=True, g=1, k=(3, 3), e=0.5):
        super().__init__()
        c_ = int(c2 * e)  # hidden channels
        self.cv1 = Conv(c1, c_, k[0], 1)
        self.cv2 = Conv(c_, c2, k[1], 1, g=g)
        self.add = shortcut and c1 == c2

    def forward(self, x):
        return x + self.cv2(self.cv1(x)) if self.add else self.cv2(self.cv1(x))

class C2f(nn.Module):
    """Faster Implementation of CSP Bottleneck with 2 convolutions."""
    def __init__(self, c1, c2, n=1, shortcut=False, g=1, e=0.5):
        super().__init__()
        self.c = int(c2 * e)  # hidden channels
        self.cv1 = Conv(c1, 2 * self.c, 1, 1)
        self.cv2 = Conv((2 + n) * self.c, c2, 1)
        self.m = nn.ModuleList(
            Bottleneck(self.c, self.c, shortcut, g, k=(3, 3), e=1.0) for _ in range(n)
        )

    def forward(self, x):
        y = list(self.cv1(x).chunk(2, 1))
        y.extend(block(y[-1]) for block in self.m)
        return self.cv2(torch.cat(y, 1))

class SPPF(nn.Module):
    """Spatial pyramid pooling, fast variant (three chained max-pools)."""
    def __init__(self, c1, c2, k=5):
        super().__init__()
        c_ = c1 // 2
        self.cv1 = Conv(c1, c_, 1, 1)
        self.cv2 = Conv(c_ * 4, c2, 1, 1)
        self.m = nn.MaxPool2d(kernel_size=k, stride=1, padding=k // 2)

    def forward(self, x):
        x = self.cv1(x)
        y1 = self.m(x)
        y2 = self.m(y1)
        y3 = self.m(y2)
        return self.cv2(torch.cat([x, y1, y2, y3], 1))

class DFL(nn.Module):
    """
    Integral of the per-side bin distribution as a frozen 1x1 conv whose
    weights are 0..reg_max-1. Used by `Detect.decode`; checkpoints carry
    it as `dfl.conv.weight`.
    """
    def __init__(self, c1=16):
        super().__init__()
        self.conv = nn.Conv2d(c1, 1, 1, bias=False).requires_grad_(False)
        x = torch.arange(c1, dtype=torch.float)
        self.conv.weight.data[:] = x.view(1, c1, 1, 1)
        self.c1 = c1

    def forward(self, x):
        """[B, 4*c1, N] logits -> [B, 4, N] expected distances."""
        b, _, a = x.shape
        return self.conv(x.view(b, 4, self.c1, a).transpose(2, 1).softmax(1)).view(b, 4, a)

class Detect(nn.Module):
    """
    Decoupled YOLOv8 detection head.

    Per level i: `cv2[i]` predicts 4*reg_max box-bin logits and `cv3[i]`
    predicts nc class logits. Sub-layers are named `cv2_{i}_{j}` so that the
    upstream `cv2.i.j` checkpoint keys translate one-to-one.

    forward_raw returns (raw_box [B, 4*reg_max, N], raw_cls [B, nc, N],
    feature_sizes); decode turns them into pixel xywh boxes and sigmoid scores.
    """
    def __init__(self, nc: int = 80, ch: tuple = (), strides=(8, 16, 32), reg_max: int = 16):
        super().__init__()
        self.nc = nc
        self.nl = len(ch)
        self.reg_max = reg_max
        self.no = nc + 4 * reg_max
        self.strides = tuple(int(s) for s in strides)
        if len(self.strides) != self.nl:
            raise ValueError(f"Detect needs one stride per level, got {len(self.strides)} for {self.nl} levels")

        c2 = max(16, ch[0] // 4, reg_max * 4)
        c3 = max(ch[0], min(nc, 100))
        self.cv2 = nn.ModuleList(
            nn.Sequential(
                OrderedDict([
                    (f"cv2_{i}_0", Conv(x, c2, 3)),
                    (f"cv2_{i}_1", Conv(c2, c2, 3)),
                    (f"cv2_{i}_2", nn.Conv2d(c2, 4 * reg_max, 1)),
                ])
            ) for i, x in enumerate(ch)
        )
        self.cv3 = nn.ModuleList(
            nn.Sequential(
                OrderedDict([
                    (f"cv3_{i}_0", Conv(x, c3, 3)),
                    (f"cv3_{i}_1", Conv(c3, c3, 3)),
                    (f"cv3_{i}_2", nn.Conv2d(c3, nc, 1)),
                ])
            ) for i, x in enumerate(ch)
        )
        self.dfl = DFL(reg_max)
        self.decoder = DFLDecoder(reg_max=reg_max, strides=self.strides)
        self.initialize_biases()

    def initialize_biases(self):
        """Box bias 1.0; class bias log(5 / nc / (640 / s)^2)."""
        for a, b, s in zip(self.cv2, self.cv3, self.strides):
            a[-1].bias.data[:] = 1.0
            b[-1].bias.data[:] = math.log(5 / self.nc / (640 / s) ** 2)

    def forward_raw(self, feats):
        if len(feats) != self.nl:
            raise ValueError(f"Detect expected {self.nl} feature maps, got {len(feats)}")
        boxes, scores, sizes = [], [], []
        for i in range(self.nl):
            b, _, h, w = feats[i].shape
            sizes.append((int(h), int(w)))
            boxes.append(self.cv2[i](feats[i]).view(b, 4 * self.reg_max, h * w))
            scores.append(self.cv3[i](feats[i]).view(b, self.nc, h * w))
        return torch.cat(boxes, 2), torch.cat(scores, 2), sizes

    def decode(self, raw_box, raw_cls, feature_sizes):
        """Pixel xywh boxes [B, 4, N] and class probabilities [B, nc, N]."""
        dist = self.dfl(raw_box).float().transpose(1, 2)  # (B,N,4)
        boxes = self.decoder.to_boxes(dist, feature_sizes, xywh=True)
        return boxes.to(raw_cls.dtype), raw_cls.sigmoid()

    def forward(self, feats):
        raw_box, raw_cls, sizes = self.forward_raw(feats)
        if self.training:
            return raw_box, raw_cls, sizes
        return self.decode(raw_box, raw_cls, sizes)
