"""
utils/geometry.py

Distribution-focal decoding shared by the loss and the detection head.
"""
import torch
from .boxes import dist2bbox, make_anchors

def dfl_expectation(logits, bins=None):
    """
    Expected distance of per-side bin logits.

    Args:
        logits: [..., n_bins] distribution logits
        bins: optional precomputed arange(n_bins)

    Returns:
        expectation in bin units, shape [...]
    """
    n_bins = logits.shape[-1]
    b = bins if bins is not None else torch.arange(
        n_bins, device=logits.device, dtype=logits.dtype
    )
    return logits.softmax(-1).matmul(b.to(logits.dtype))

def decode_distances(raw_box: torch.Tensor, n_bins: int, bins=None) -> torch.Tensor:
    """
    Decode channel-first box logits [B, 4*n_bins, N] into ltrb distances [B, N, 4].
    """
    bs, _, na = raw_box.shape
    logits = raw_box.view(bs, 4, n_bins, na).permute(0, 3, 1, 2)  # B,N,4,bins
    return dfl_expectation(logits, bins)

class DFLDecoder:
    """
    Anchor grid cache plus DFL decoding for a fixed set of strides.

    Anchors are recomputed only when the feature sizes change.
    """
    def __init__(self, reg_max=16, strides=(8, 16, 32), device='cpu'):
        self.device = torch.device(device)
        self.reg_max = int(reg_max)
        self.strides = tuple(int(s) for s in strides)
        self._cache = {}
        self._bins = None

    @property
    def bins(self):
        if self._bins is None or self._bins.device != self.device:
            self._bins = torch.arange(self.reg_max, device=self.device, dtype=torch.float32)
        return self._bins

    def get_anchors(self, feature_sizes, device=None):
        """Return (anchor_points [N,2], stride_tensor [N,1]) for the given (H, W) list."""
        if device is not None and torch.device(device) != self.device:
            self.device = torch.device(device)
            self._cache.clear()
        key = tuple((int(h), int(w)) for h, w in feature_sizes)
        if key not in self._cache:
            self._cache[key] = make_anchors(key, self.strides, 0.5, device=self.device)
        return self._cache[key]

    def to_boxes(self, dist: torch.Tensor, feature_sizes, xywh: bool = True) -> torch.Tensor:
        """ltrb distances [B, N, 4] in grid units -> pixel boxes [B, 4, N]."""
        anchor_points, stride_tensor = self.get_anchors(feature_sizes, dist.device)
        boxes = dist2bbox(dist, anchor_points.unsqueeze(0), xywh=xywh, dim=-1)
        return (boxes * stride_tensor.unsqueeze(0)).transpose(1, 2)

    def decode(self, raw_box: torch.Tensor, feature_sizes, xywh: bool = True) -> torch.Tensor:
        """Decode [B, 4*reg_max, N] logits to pixel boxes [B, 4, N] (xywh by default)."""
        self.get_anchors(feature_sizes, raw_box.device)
        dist = decode_distances(raw_box.float(), self.reg_max, self.bins)
        return self.to_boxes(dist, feature_sizes, xywh=xywh)
