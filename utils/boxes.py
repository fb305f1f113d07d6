"""
utils/boxes.py

Box format conversions and the anchor grid shared by the loss, the assigner
and the detection head.
"""
import numpy as np
import torch

def xywh2xyxy(x):
    """Convert cx,cy,w,h to x1,y1,x2,y2 along the last dim (tensor or ndarray)."""
    y = x.clone() if isinstance(x, torch.Tensor) else np.copy(x)
    half_w = x[..., 2] * 0.5
    half_h = x[..., 3] * 0.5
    y[..., 0] = x[..., 0] - half_w
    y[..., 1] = x[..., 1] - half_h
    y[..., 2] = x[..., 0] + half_w
    y[..., 3] = x[..., 1] + half_h
    return y

def xyxy2xywh(x):
    """Convert x1,y1,x2,y2 to cx,cy,w,h along the last dim (tensor or ndarray)."""
    y = x.clone() if isinstance(x, torch.Tensor) else np.copy(x)
    y[..., 0] = (x[..., 0] + x[..., 2]) * 0.5
    y[..., 1] = (x[..., 1] + x[..., 3]) * 0.5
    y[..., 2] = x[..., 2] - x[..., 0]
    y[..., 3] = x[..., 3] - x[..., 1]
    return y

def make_anchors(feature_sizes, strides, offset: float = 0.5, device=None, dtype=torch.float32):
    """
    Build stride-relative anchor centers for a list of feature maps.

    Args:
        feature_sizes: iterable of (H, W) per scale, or feature tensors [B, C, H, W].
        strides: stride per scale.
        offset: cell-center offset (0.5 puts anchors at cell centers).

    Returns:
        anchor_points [N, 2] as (x, y) in stride units, stride_tensor [N, 1].
    """
    points, stride_rows = [], []
    for size, stride in zip(feature_sizes, strides):
        if isinstance(size, torch.Tensor) and size.dim() == 4:
            h, w = int(size.shape[2]), int(size.shape[3])
            device = device or size.device
        else:
            h, w = int(size[0]), int(size[1])
        sx = torch.arange(w, device=device, dtype=dtype) + offset
        sy = torch.arange(h, device=device, dtype=dtype) + offset
        yy, xx = torch.meshgrid(sy, sx, indexing='ij')
        points.append(torch.stack((xx, yy), -1).view(-1, 2))
        stride_rows.append(torch.full((h * w, 1), float(stride), dtype=dtype, device=device))
    return torch.cat(points), torch.cat(stride_rows)

def dist2bbox(distance, anchor_points, xywh: bool = False, dim: int = -1):
    """Transform ltrb distances to boxes (xyxy by default) around anchor_points."""
    lt, rb = distance.chunk(2, dim)
    x1y1 = anchor_points - lt
    x2y2 = anchor_points + rb
    if xywh:
        return torch.cat(((x1y1 + x2y2) / 2, x2y2 - x1y1), dim)
    return torch.cat((x1y1, x2y2), dim)

def bbox2dist(anchor_points, bbox, reg_max):
    """Transform xyxy boxes to ltrb distances, clamped inside [0, reg_max - 0.01]."""
    x1y1, x2y2 = bbox.chunk(2, -1)
    return torch.cat((anchor_points - x1y1, x2y2 - anchor_points), -1).clamp_(0, reg_max - 0.01)

def clip_boxes_(boxes, shape):
    """Clip xyxy boxes in place to an (h, w) canvas."""
    h, w = shape
    if isinstance(boxes, torch.Tensor):
        boxes[..., 0].clamp_(0, w)
        boxes[..., 1].clamp_(0, h)
        boxes[..., 2].clamp_(0, w)
        boxes[..., 3].clamp_(0, h)
    else:
        boxes[..., [0, 2]] = boxes[..., [0, 2]].clip(0, w)
        boxes[..., [1, 3]] = boxes[..., [1, 3]].clip(0, h)
    return boxes
