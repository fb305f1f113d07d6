"""
Model validation metrics.
"""
from typing import Dict, List, Tuple

import numpy as np
import torch

from utils.box_iou import pairwise_box_iou

IOU_THRESHOLDS = np.linspace(0.5, 0.95, 10)

def fitness(map50: float, map5095: float) -> float:
    """Model fitness as a weighted combination of mAP@0.5 and mAP@0.5:0.95."""
    return 0.1 * float(map50) + 0.9 * float(map5095)

def compute_ap(recall, precision) -> float:
    """
    Average precision from cumulative recall/precision curves.

    The precision envelope (running max from the right) is sampled at 101
    evenly spaced recall points, COCO style.
    """
    mrec = np.concatenate(([0.0], np.asarray(recall, dtype=np.float64), [1.0]))
    mpre = np.concatenate(([1.0], np.asarray(precision, dtype=np.float64), [0.0]))
    mpre = np.flip(np.maximum.accumulate(np.flip(mpre)))
    x = np.linspace(0, 1, 101)
    idx = np.searchsorted(mrec, x, side="left").clip(max=len(mrec) - 1)
    return float(mpre[idx].mean())

def _as_numpy(x, dtype) -> np.ndarray:
    if isinstance(x, torch.Tensor):
        x = x.detach().cpu().numpy()
    return np.asarray(x, dtype=dtype)

def match_predictions(
    iou: np.ndarray,
    pred_classes: np.ndarray,
    gt_classes: np.ndarray,
    iou_thresholds: np.ndarray,
) -> np.ndarray:
    """
    Greedy one-to-one matching for a single image.

    Args:
        iou: [P, G] IoU of predictions (already sorted by confidence, descending) vs GTs
        pred_classes: [P]
        gt_classes: [G]
        iou_thresholds: [T]

    Returns:
        [P, T] bool, True where the prediction is a true positive at that threshold.
    """
    P, G = iou.shape
    T = len(iou_thresholds)
    correct = np.zeros((P, T), dtype=bool)
    if P == 0 or G == 0:
        return correct
    same = pred_classes[:, None] == gt_classes[None, :]
    cand = np.where(same, iou, -1.0)
    # predictions that can never reach the lowest threshold stay false
    active = np.nonzero(cand.max(1) >= iou_thresholds.min())[0]
    for ti, t in enumerate(iou_thresholds):
        taken = np.zeros(G, dtype=bool)
        for p in active:
            row = np.where(taken, -1.0, cand[p])
            g = int(row.argmax())
            if row[g] >= t:
                taken[g] = True
                correct[p, ti] = True
    return correct

class MAPMetric:
    """
    Accumulates per-image detections and reports mAP@0.5 and mAP@0.5:0.95.

    Usage:
        metric = MAPMetric(num_classes)
        for each image: metric.update(boxes, scores, classes, gt_boxes, gt_classes)
        map50, map5095, per_class_ap50 = metric.compute()
    """
    def __init__(self, num_classes: int, iou_thresholds=IOU_THRESHOLDS):
        self.num_classes = int(num_classes)
        self.iou_thresholds = np.asarray(iou_thresholds, dtype=np.float64)
        self.reset()

    def reset(self):
        self._correct: List[np.ndarray] = []
        self._conf: List[np.ndarray] = []
        self._cls: List[np.ndarray] = []
        self.gt_counts = np.zeros(self.num_classes, dtype=np.int64)

    def update(self, pred_boxes, pred_scores, pred_classes, gt_boxes, gt_classes):
        """
        Add one image.

        Args:
            pred_boxes: [P, 4] xyxy pixels
            pred_scores: [P]
            pred_classes: [P]
            gt_boxes: [G, 4] xyxy pixels
            gt_classes: [G]
        """
        scores = _as_numpy(pred_scores, np.float64).reshape(-1)
        pcls = _as_numpy(pred_classes, np.int64).reshape(-1)
        gcls = _as_numpy(gt_classes, np.int64).reshape(-1)
        gcls_valid = gcls[(gcls >= 0) & (gcls < self.num_classes)]
        self.gt_counts += np.bincount(gcls_valid, minlength=self.num_classes)

        order = np.argsort(-scores, kind="stable")
        scores, pcls = scores[order], pcls[order]
        if len(scores) and len(gcls):
            pb = torch.as_tensor(_as_numpy(pred_boxes, np.float32).reshape(-1, 4)[order])
            gb = torch.as_tensor(_as_numpy(gt_boxes, np.float32).reshape(-1, 4))
            iou = pairwise_box_iou(pb, gb).numpy().astype(np.float64)
            correct = match_predictions(iou, pcls, gcls, self.iou_thresholds)
        else:
            correct = np.zeros((len(scores), len(self.iou_thresholds)), dtype=bool)

        self._correct.append(correct)
        self._conf.append(scores)
        self._cls.append(pcls)

    def ap_per_class(self) -> np.ndarray:
        """[num_classes, T] AP table; classes without GT are NaN."""
        T = len(self.iou_thresholds)
        ap = np.full((self.num_classes, T), np.nan)
        if self._conf:
            correct = np.concatenate(self._correct, 0)
            conf = np.concatenate(self._conf, 0)
            pcls = np.concatenate(self._cls, 0)
        else:
            correct = np.zeros((0, T), dtype=bool)
            conf = np.zeros(0)
            pcls = np.zeros(0, dtype=np.int64)
        order = np.argsort(-conf, kind="stable")
        correct, pcls = correct[order], pcls[order]

        for c in range(self.num_classes):
            n_gt = int(self.gt_counts[c])
            if n_gt == 0:
                continue
            hits = correct[pcls == c]
            if hits.shape[0] == 0:
                ap[c] = 0.0
                continue
            tpc = hits.cumsum(0)
            fpc = (~hits).cumsum(0)
            recall = tpc / n_gt
            precision = tpc / (tpc + fpc)
            for ti in range(T):
                ap[c, ti] = compute_ap(recall[:, ti], precision[:, ti])
        return ap

    def compute(self) -> Tuple[float, float, Dict[int, float]]:
        """Returns (map50, map5095, {class: AP50}) over classes with at least one GT."""
        ap = self.ap_per_class()
        has_gt = self.gt_counts > 0
        if not has_gt.any():
            return 0.0, 0.0, {}
        ap = ap[has_gt]
        classes = np.nonzero(has_gt)[0]
        per_class = {int(c): float(a) for c, a in zip(classes, ap[:, 0])}
        return float(ap[:, 0].mean()), float(ap.mean()), per_class
