import torch
import torch.nn as nn
import torch.nn.functional as F

from utils.box_iou import ciou
from .boxes import bbox2dist, dist2bbox, make_anchors
from .geometry import decode_distances
from .assigner import TaskAlignedAssigner
from core.config import get_config

def dfl_loss(pred_dist: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """
    Distribution focal loss for a flat batch of sides.

    Args:
        pred_dist: [K, R+1] bin logits
        target: [K] distances in [0, R - 0.01]

    Returns:
        [K] loss; the target is split between its two neighbouring bins.
    """
    reg_max = pred_dist.shape[-1] - 1
    tl = target.long()
    tr = (tl + 1).clamp_(max=reg_max)
    wl = (tl + 1).to(target.dtype) - target
    wr = 1.0 - wl
    return (
        F.cross_entropy(pred_dist, tl, reduction="none") * wl +
        F.cross_entropy(pred_dist, tr, reduction="none") * wr
    )

class BboxLoss(nn.Module):
    """CIoU + DFL on foreground anchors, both normalized by the target-score sum."""
    def __init__(self, reg_max: int = 15):
        super().__init__()
        self.reg_max = int(reg_max)

    def forward(
        self,
        pred_dist,  # (B,N,4*(R+1))
        pred_bboxes,  # (B,N,4) stride units
        anchor_points,  # (N,2) stride units
        target_bboxes,  # (B,N,4) stride units
        target_scores,  # (B,N,C)
        target_scores_sum,
        fg_mask,  # (B,N) bool
    ):
        weight = target_scores.sum(-1)[fg_mask].unsqueeze(-1)  # (K,1)
        iou = ciou(pred_bboxes[fg_mask], target_bboxes[fg_mask])
        loss_iou = ((1.0 - iou).unsqueeze(-1) * weight).sum() / target_scores_sum

        target_ltrb = bbox2dist(anchor_points, target_bboxes, self.reg_max)
        side_loss = dfl_loss(
            pred_dist[fg_mask].view(-1, self.reg_max + 1),
            target_ltrb[fg_mask].view(-1),
        ).view(-1, 4).mean(-1, keepdim=True)
        loss_dfl = (side_loss * weight).sum() / target_scores_sum
        return loss_iou, loss_dfl

class DetectionLoss(nn.Module):
    """
    BCE + CIoU + DFL detection loss over task-aligned targets.

    Call with the raw head outputs of `forward_train` and the padded GT tables
    (normalized xyxy). Returns (loss * batch_size, detached [box, cls, dfl]).
    """
    def __init__(self, model, cfg=None):
        super().__init__()
        config = get_config(cfg=cfg)
        self.nc = int(model.nc)
        self.n_bins = int(model.reg_max)
        self.reg_max = self.n_bins - 1  # max distance R; distributions span R+1 bins
        if self.reg_max < 1:
            raise ValueError(f"reg_max must be >= 2 bins for DFL, got {self.n_bins}")
        self.strides = [int(s) for s in model.strides]

        gains = config.loss_gains
        self.box_gain = gains['box']
        self.cls_gain = gains['cls']
        self.dfl_gain = gains['dfl']

        assign_cfg = config.assigner_config
        self.assigner = TaskAlignedAssigner(
            num_classes=self.nc,
            topk=assign_cfg['topk'],
            alpha=assign_cfg['alpha'],
            beta=assign_cfg['beta'],
        )
        self.bbox_loss = BboxLoss(self.reg_max)
        self.bce = nn.BCEWithLogitsLoss(reduction='none')

    def forward(
        self,
        raw_box,
        raw_cls,
        feature_sizes,
        gt_labels,
        gt_boxes,
        gt_mask,
        img_size,
    ):
        B, _, N = raw_cls.shape
        device, dtype = raw_cls.device, raw_cls.dtype
        if isinstance(img_size, (tuple, list)):
            img_h, img_w = img_size
        else:
            img_h = img_w = img_size

        anchor_points, stride_tensor = make_anchors(
            feature_sizes, self.strides, 0.5, device=device, dtype=dtype
        )
        if anchor_points.shape[0] != N:
            raise ValueError(f"anchor count {anchor_points.shape[0]} does not match predictions ({N})")

        pred_dist = raw_box.view(B, 4, self.n_bins, N).permute(0, 3, 1, 2).reshape(B, N, -1)
        pred_scores = raw_cls.permute(0, 2, 1).contiguous()  # (B,N,C)
        pred_bboxes = dist2bbox(
            decode_distances(raw_box, self.n_bins), anchor_points.unsqueeze(0), xywh=False
        )  # (B,N,4) stride units

        scale = torch.tensor([img_w, img_h, img_w, img_h], device=device, dtype=dtype)
        gt_px = gt_boxes.to(device=device, dtype=dtype) * scale
        gt_mask = gt_mask.to(device=device, dtype=dtype)

        targets = self.assigner(
            pred_scores.detach().sigmoid(),
            (pred_bboxes.detach() * stride_tensor).to(gt_px.dtype),
            anchor_points * stride_tensor,
            gt_labels.to(device),
            gt_px,
            gt_mask,
        )
        fg_mask = targets["fg_mask"]
        target_scores = targets["target_scores"]
        target_scores_sum = torch.clamp(target_scores.sum(), min=1.0)

        loss_cls = self.bce(pred_scores, target_scores.to(dtype)).sum() / target_scores_sum

        if fg_mask.any():
            target_bboxes = targets["target_bboxes"] / stride_tensor
            loss_box, loss_dfl = self.bbox_loss(
                pred_dist,
                pred_bboxes,
                anchor_points,
                target_bboxes,
                target_scores,
                target_scores_sum,
                fg_mask,
            )
        else:
            loss_box = torch.zeros((), device=device, dtype=dtype)
            loss_dfl = torch.zeros((), device=device, dtype=dtype)

        loss = torch.stack((
            loss_box * self.box_gain,
            loss_cls * self.cls_gain,
            loss_dfl * self.dfl_gain,
        ))
        return loss.sum() * B, loss.detach()
