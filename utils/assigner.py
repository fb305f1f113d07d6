from typing import Dict
import torch
import torch.nn as nn

from .box_iou import box_iou

class TaskAlignedAssigner(nn.Module):
    """
    TOOD-style task-aligned assigner: alignment = score^α · IoU^β,
    center-in-box candidates, top-k per GT, IoU-argmax conflict resolution.

    Box format: xyxy, pixel units. Inputs (B = batch, N = anchors, M = max GTs, C = classes):
      pd_scores:    (B,N,C)  sigmoid probabilities (detached)
      pd_bboxes:    (B,N,4)  decoded boxes (detached)
      anc_points:   (N,2)    anchor centers (x,y)
      gt_labels:    (B,M,1)  class id per GT
      gt_bboxes:    (B,M,4)  GT boxes
      mask_gt:      (B,M,1)  1 if GT valid else 0

    Returns a dict with fg_mask (B,N) bool, target_gt (B,N), target_scores (B,N,C),
    target_labels (B,N) and target_bboxes (B,N,4).
    """
    def __init__(
        self,
        num_classes: int = 80,
        topk: int = 10,
        alpha: float = 0.5,  # exponent on class score
        beta: float = 6.0,  # exponent on IoU
        eps: float = 1e-9,
    ):
        super().__init__()
        self.num_classes = int(num_classes)
        self.topk = int(topk)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.eps = float(eps)

    @torch.no_grad()
    def forward(
        self,
        pd_scores: torch.Tensor,  # (B,N,C)
        pd_bboxes: torch.Tensor,  # (B,N,4)
        anc_points: torch.Tensor,  # (N,2)
        gt_labels: torch.Tensor,  # (B,M,1)
        gt_bboxes: torch.Tensor,  # (B,M,4)
        mask_gt: torch.Tensor,  # (B,M,1)
    ) -> Dict[str, torch.Tensor]:
        B, N, C = pd_scores.shape
        M = gt_bboxes.shape[1]

        if M == 0 or not bool(mask_gt.any()):
            return self._empty_return(pd_scores, pd_bboxes)

        mask_gt = mask_gt.to(pd_scores.dtype)
        mask_in_gts = self._centers_in_boxes(anc_points, gt_bboxes)  # (B,M,N)
        valid = mask_in_gts * mask_gt  # (B,M,N)

        align, overlaps = self._box_metrics(pd_scores, pd_bboxes, gt_labels, gt_bboxes, valid)
        mask_topk = self._topk_mask(align, mask_gt)
        mask_pos = mask_topk * valid

        target_gt_idx, fg_mask, mask_pos = self._resolve_conflicts(mask_pos, overlaps)
        target_labels, target_bboxes, target_scores = self._gather_targets(
            gt_labels, gt_bboxes, target_gt_idx, fg_mask
        )

        align = align * mask_pos
        pos_align = align.amax(dim=-1, keepdim=True)  # (B,M,1)
        pos_overlaps = (overlaps * mask_pos).amax(dim=-1, keepdim=True)  # (B,M,1)
        norm = (align * pos_overlaps / (pos_align + self.eps)).amax(dim=1)  # (B,N)
        target_scores = target_scores * norm.unsqueeze(-1)

        return {
            "fg_mask": fg_mask.bool(),
            "target_gt": target_gt_idx,
            "target_scores": target_scores,
            "target_labels": target_labels,
            "target_bboxes": target_bboxes,
        }

    def _empty_return(self, pd_scores, pd_bboxes):
        B, N, C = pd_scores.shape
        device = pd_scores.device
        return {
            "fg_mask": torch.zeros((B, N), device=device, dtype=torch.bool),
            "target_gt": torch.zeros((B, N), device=device, dtype=torch.long),
            "target_scores": torch.zeros((B, N, C), device=device, dtype=pd_scores.dtype),
            "target_labels": torch.zeros((B, N), device=device, dtype=torch.long),
            "target_bboxes": torch.zeros((B, N, 4), device=device, dtype=pd_bboxes.dtype),
        }

    def _centers_in_boxes(self, anc_points, gt_bboxes):
        B, M, _ = gt_bboxes.shape
        N = anc_points.shape[0]
        lt, rb = gt_bboxes.view(-1, 1, 4).chunk(2, 2)  # (B*M,1,2)
        deltas = torch.cat((anc_points[None] - lt, rb - anc_points[None]), dim=2)
        return deltas.view(B, M, N, 4).amin(dim=-1).gt_(self.eps).to(gt_bboxes.dtype)

    def _box_metrics(self, pd_scores, pd_bboxes, gt_labels, gt_bboxes, valid):
        B, N, C = pd_scores.shape
        M = gt_bboxes.shape[1]
        mask = valid.bool()

        labels = gt_labels.long().view(B, M).clamp_(0, C - 1)
        scores = pd_scores.transpose(1, 2).gather(1, labels.unsqueeze(-1).expand(B, M, N))

        overlaps = torch.zeros((B, M, N), device=pd_bboxes.device, dtype=pd_bboxes.dtype)
        pd = pd_bboxes.unsqueeze(1).expand(B, M, N, 4)[mask]
        gt = gt_bboxes.unsqueeze(2).expand(B, M, N, 4)[mask]
        overlaps[mask] = box_iou(gt, pd).clamp_(0)

        align = scores.pow(self.alpha) * overlaps.pow(self.beta) * valid
        return align, overlaps

    def _topk_mask(self, metric, mask_gt):
        """
        Per-GT top-k anchors as a (B,M,N) float mask.

        Rows of padded GTs have their indices forced to anchor 0; counting with
        scatter-add and zeroing counts above one removes those hits.
        """
        B, M, N = metric.shape
        k = min(self.topk, N)
        _, topk_idxs = torch.topk(metric, k, dim=-1, largest=True)  # (B,M,k)
        topk_idxs = topk_idxs.masked_fill(~mask_gt.bool().expand(-1, -1, k), 0)

        counts = torch.zeros((B, M, N), dtype=torch.int8, device=metric.device)
        ones = torch.ones_like(topk_idxs[:, :, :1], dtype=torch.int8)
        for j in range(k):
            counts.scatter_add_(-1, topk_idxs[:, :, j:j + 1], ones)
        counts.masked_fill_(counts > 1, 0)
        return counts.to(metric.dtype)

    def _resolve_conflicts(self, mask_pos, overlaps):
        fg_mask = mask_pos.sum(dim=1)  # (B,N)
        if fg_mask.max() > 1:
            M = mask_pos.shape[1]
            multi = (fg_mask.unsqueeze(1) > 1).expand(-1, M, -1)
            winner = overlaps.argmax(dim=1)  # (B,N)
            keep = torch.zeros_like(mask_pos)
            keep.scatter_(1, winner.unsqueeze(1), 1.0)
            mask_pos = torch.where(multi, keep, mask_pos)
            fg_mask = mask_pos.sum(dim=1)
        target_gt_idx = mask_pos.argmax(dim=1)  # (B,N)
        return target_gt_idx, fg_mask > 0, mask_pos

    def _gather_targets(self, gt_labels, gt_bboxes, target_gt_idx, fg_mask):
        B, M, _ = gt_bboxes.shape
        batch_base = torch.arange(B, device=gt_labels.device, dtype=torch.long)[:, None] * M
        flat_idx = target_gt_idx + batch_base  # (B,N)
        target_labels = gt_labels.long().flatten()[flat_idx].clamp_(0)  # (B,N)
        target_bboxes = gt_bboxes.view(-1, 4)[flat_idx]  # (B,N,4)

        target_scores = torch.zeros(
            (*target_labels.shape, self.num_classes),
            dtype=gt_bboxes.dtype,
            device=gt_bboxes.device,
        )
        target_scores.scatter_(2, target_labels.clamp(max=self.num_classes - 1).unsqueeze(-1), 1.0)
        target_scores = target_scores * fg_mask.unsqueeze(-1)
        return target_labels, target_bboxes, target_scores
