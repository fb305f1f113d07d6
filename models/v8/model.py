import torch
import torch.nn as nn
import torch.nn.functional as F

from utils.helpers import make_divisible
from utils.logging import get_logger
from .layers import C2f, Conv, Detect, SPPF

# variant: (depth multiple, width multiple, max channels)
SCALES = {
    "n": (0.33, 0.25, 1024),
    "s": (0.33, 0.50, 1024),
    "m": (0.67, 0.75, 768),
    "l": (1.00, 1.00, 512),
    "x": (1.00, 1.25, 512),
}
STRIDES = (8, 16, 32)

class YOLOv8(nn.Module):
    """
    YOLOv8 detection network with attribute names matching the upstream
    layer indices (see utils.weight_loader.WEIGHT_MAP).

    Backbone b0..b9, top-down neck n_c2f1/n_c2f2, bottom-up neck
    n_down1/n_c2f3/n_down2/n_c2f4, and the `detect` head on P3/P4/P5.
    """
    def __init__(self, nc: int = 80, variant: str = "n", reg_max: int = 16, ch: int = 3):
        super().__init__()
        if variant not in SCALES:
            raise ValueError(f"unknown variant {variant!r}; expected one of {sorted(SCALES)}")
        depth, width, max_channels = SCALES[variant]
        self.nc = int(nc)
        self.variant = variant
        self.reg_max = int(reg_max)
        self.strides = STRIDES

        def c(x):
            return make_divisible(min(x, max_channels) * width, 8)

        def n(x):
            return max(round(x * depth), 1)

        c64, c128, c256, c512, c1024 = c(64), c(128), c(256), c(512), c(1024)
        self.b0 = Conv(ch, c64, 3, 2)
        self.b1 = Conv(c64, c128, 3, 2)
        self.b2 = C2f(c128, c128, n(3), True)
        self.b3 = Conv(c128, c256, 3, 2)
        self.b4 = C2f(c256, c256, n(6), True)
        self.b5 = Conv(c256, c512, 3, 2)
        self.b6 = C2f(c512, c512, n(6), True)
        self.b7 = Conv(c512, c1024, 3, 2)
        self.b8 = C2f(c1024, c1024, n(3), True)
        self.b9 = SPPF(c1024, c1024, 5)

        self.n_c2f1 = C2f(c1024 + c512, c512, n(3))
        self.n_c2f2 = C2f(c512 + c256, c256, n(3))
        self.n_down1 = Conv(c256, c256, 3, 2)
        self.n_c2f3 = C2f(c256 + c512, c512, n(3))
        self.n_down2 = Conv(c512, c512, 3, 2)
        self.n_c2f4 = C2f(c512 + c1024, c1024, n(3))

        self.feature_channels = (c256, c512, c1024)
        self.detect = Detect(self.nc, self.feature_channels, STRIDES, self.reg_max)

        get_logger().debug(
            "model/init",
            {"variant": variant, "nc": self.nc, "reg_max": self.reg_max,
             "channels": list(self.feature_channels)},
        )

    def features(self, x):
        """P3/P4/P5 neck outputs."""
        x = self.b1(self.b0(x))
        x = self.b3(self.b2(x))
        p3 = self.b4(x)
        p4 = self.b6(self.b5(p3))
        p5 = self.b9(self.b8(self.b7(p4)))

        up = F.interpolate(p5, scale_factor=2.0, mode="nearest")
        h4 = self.n_c2f1(torch.cat([up, p4], 1))
        up = F.interpolate(h4, scale_factor=2.0, mode="nearest")
        o3 = self.n_c2f2(torch.cat([up, p3], 1))
        o4 = self.n_c2f3(torch.cat([self.n_down1(o3), h4], 1))
        o5 = self.n_c2f4(torch.cat([self.n_down2(o4), p5], 1))
        return [o3, o4, o5]

    def forward_train(self, x):
        """(raw_box [B, 4*reg_max, N], raw_cls [B, nc, N], feature_sizes)."""
        return self.detect.forward_raw(self.features(x))

    def forward_train_with_features(self, x):
        """forward_train plus the neck feature maps (for feature distillation)."""
        feats = self.features(x)
        raw_box, raw_cls, sizes = self.detect.forward_raw(feats)
        return raw_box, raw_cls, sizes, feats

    def forward(self, x):
        """(boxes_xywh [B, 4, N] pixels, class scores [B, nc, N], neck features)."""
        feats = self.features(x)
        raw_box, raw_cls, sizes = self.detect.forward_raw(feats)
        boxes, scores = self.detect.decode(raw_box, raw_cls, sizes)
        return boxes, scores, feats
